"""Error taxonomy shared by every sheet-assist context."""

from __future__ import annotations


class SheetAssistError(Exception):
    """Base class for failures that surface to the user as a message."""


class ConfigurationError(SheetAssistError):
    pass


class TransportError(SheetAssistError):
    """The completion provider or the API answered badly or not at all."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(SheetAssistError):
    """Every extraction strategy failed on a provider completion."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class ValidationError(SheetAssistError):
    pass


class InvalidFormula(ValidationError):
    def __init__(self, message: str = "Invalid formula generated", formula: object = None) -> None:
        super().__init__(message)
        self.formula = formula


class HostOperationError(SheetAssistError):
    """The host document rejected a read or a write."""

    def __init__(self, message: str, function_name: str | None = None) -> None:
        super().__init__(message)
        self.function_name = function_name


class BridgeError(SheetAssistError):
    pass


class UnknownCapability(BridgeError):
    pass


class BridgeTimeout(BridgeError, TimeoutError):
    def __init__(self, function_name: str, timeout: float) -> None:
        super().__init__(f"{function_name} did not answer within {timeout:g}s")
        self.function_name = function_name
        self.timeout = timeout


# Errors that may be named in an API or background reply. Anything else comes
# back as a TransportError.
WIRE_ERRORS = {
    cls.__name__: cls
    for cls in (ConfigurationError, TransportError, ParseError, ValidationError, InvalidFormula)
}


def error_from_wire(error_type: object, message: str) -> SheetAssistError:
    cls = WIRE_ERRORS.get(error_type, TransportError) if isinstance(error_type, str) else TransportError
    return cls(message)
