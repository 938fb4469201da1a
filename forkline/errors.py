"""
Forkline error taxonomy.

Configuration errors block an action before any I/O. Structural errors mean the
chat changed under the caller (a message or branch is gone) and nothing was
mutated. Gateway errors come from the language-model provider after the user's
turn is already stored.
"""


class ForklineError(Exception):
    """Base class for every error raised by the chat engine."""

    kind = "error"


# Configuration -------------------------------------------------------------

class ConfigurationError(ForklineError):
    kind = "configuration"


class MissingCredential(ConfigurationError):
    def __init__(self, message: str = "OpenRouter API key is missing. Add it from the settings menu before chatting."):
        super().__init__(message)


class MissingPreset(ConfigurationError):
    def __init__(self, message: str = "You need to activate a preset before chatting."):
        super().__init__(message)


class MissingResponder(ConfigurationError):
    def __init__(self, message: str = "Select a character to respond to your messages."):
        super().__init__(message)


# Structural ----------------------------------------------------------------

class StructuralError(ForklineError):
    kind = "structural"


class ChatNotFound(StructuralError):
    def __init__(self, chat_id: str):
        super().__init__(f"Chat not found: {chat_id}")
        self.chat_id = chat_id


class NoActiveBranch(StructuralError):
    def __init__(self, message: str = "No active branch is available."):
        super().__init__(message)


class PivotNotFound(StructuralError):
    def __init__(self, message_id: str):
        super().__init__("The selected message is no longer available.")
        self.message_id = message_id


class MessageNotFound(StructuralError):
    def __init__(self, message_id: str):
        super().__init__("Message to regenerate was not found.")
        self.message_id = message_id


class NoPendingUserTurn(StructuralError):
    def __init__(self, message: str = "Cannot generate a response without a preceding user message."):
        super().__init__(message)


# Gateway -------------------------------------------------------------------

class GatewayError(ForklineError):
    kind = "gateway"


class EmptyCompletion(GatewayError):
    def __init__(self, message: str = "Model returned an empty response."):
        super().__init__(message)


# Other ---------------------------------------------------------------------

class SessionBusy(ForklineError):
    kind = "busy"

    def __init__(self, message: str = "A response is already being generated for this chat."):
        super().__init__(message)


class ImportFormatError(ForklineError):
    kind = "import"
