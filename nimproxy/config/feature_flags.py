"""Feature flags consumed by the translation gateway."""

from dataclasses import dataclass

from nimproxy.config.settings import Settings


@dataclass(frozen=True, slots=True)
class FeatureFlags:
    # Prepend upstream reasoning_content to the visible answer inside <think> markers.
    show_reasoning: bool = False
    # Ask the upstream chat template to emit reasoning content.
    enable_thinking_mode: bool = False

    @classmethod
    def from_settings(cls, source: Settings) -> "FeatureFlags":
        return cls(
            show_reasoning=source.show_reasoning,
            enable_thinking_mode=source.enable_thinking_mode,
        )
