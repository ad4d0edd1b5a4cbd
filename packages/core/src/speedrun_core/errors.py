"""Exception types raised across speedrun_core."""


class SpeedrunError(Exception):
    """Base class for speedrun errors."""


class ConfigError(SpeedrunError):
    """Configuration could not be loaded or a secret could not be resolved."""


class GatewayError(SpeedrunError):
    """A GitHub call failed after exhausting its retries, or was rejected."""


class ProviderError(SpeedrunError):
    """The LLM provider failed after exhausting its retries."""


class ConversationLimitError(SpeedrunError):
    """The analysis conversation hit its iteration cap without a final answer."""


class ToolError(SpeedrunError):
    """A tool call had invalid arguments or its backend failed."""
