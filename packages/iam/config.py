"""IAM engine configuration loaded from the environment."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class IAMSettings(BaseSettings):
    """Engine settings loaded from environment.

    Security-relevant defaults are the restrictive ones: resource
    scopes must match exactly and conditions the engine cannot
    evaluate deny access.
    """

    model_config = SettingsConfigDict(
        env_prefix="IAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # "exact": a scoped binding only covers its own resource.
    # "type_fallback": a scoped binding covers every resource of its type.
    scope_mode: Literal["exact", "type_fallback"] = "exact"

    # Outcome for time_based / ip_based conditions
    unresolved_conditions: Literal["deny", "allow"] = "deny"

    # Version stamped on generated IAM policies
    policy_version: str = "1"

    # Optional YAML catalog replacing the built-in permissions and roles
    catalog_path: str | None = None

    @property
    def allows_type_fallback(self) -> bool:
        """Check if scoped bindings extend to their whole resource type."""
        return self.scope_mode == "type_fallback"

    @property
    def fail_open(self) -> bool:
        """Check if unresolved conditions pass."""
        return self.unresolved_conditions == "allow"


# Singleton instance
_settings: IAMSettings | None = None


def get_settings() -> IAMSettings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = IAMSettings()
    return _settings
