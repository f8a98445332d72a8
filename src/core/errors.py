"""Exception types shared by the core and adapters."""

from __future__ import annotations


class CourierError(Exception):
    """Base class for courier errors."""


class ConfigurationError(CourierError, ValueError):
    """Raised at construction time when a workflow cannot be assembled."""


class UnsupportedTypeError(ConfigurationError):
    """Raised by factories for an unknown source, destination or formatter type."""

    def __init__(self, kind: str, value: str, supported: "list[str] | tuple[str, ...]") -> None:
        self.kind = kind
        self.value = value
        self.supported = tuple(supported)
        super().__init__(
            f"Unsupported {kind} type: {value!r} (supported: {', '.join(self.supported)})"
        )


class LanguageModelError(CourierError):
    """Raised by language-model adapters when no usable completion is produced."""
