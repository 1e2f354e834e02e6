class ValheimBotError(Exception):
    """Base exception for the Valheim bot."""


class AuthenticationError(ValheimBotError):
    """401 - request signature missing or invalid."""


class ValidationError(ValheimBotError):
    """Malformed body or unknown command."""


class ConfigurationError(ValheimBotError):
    """Required setting or secret is absent."""

    def __init__(self, setting: str) -> None:
        self.setting = setting
        super().__init__(f"Missing configuration: {setting}")


class ControlPlaneError(ValheimBotError):
    """Transient failure talking to the compute control plane."""


class NotFoundError(ControlPlaneError):
    """Compute instance does not exist."""
