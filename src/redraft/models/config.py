"""Configuration models for Redraft clients and components."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

BACKOFF_CAP_SECS = 8.0


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.redraft/conversations.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""

    retention_days: int = Field(
        default=30,
        ge=0,
        description="Days a soft-deleted session is retained before it may be purged.",
    )


class RegenerationConfig(BaseModel):
    """Configuration for assistant reply generation."""

    model: str = Field(
        default="gpt-4o-mini",
        description="Completion model string in litellm format.",
    )

    system_prompt: str = "You are Xavo, an executive coach focused on corporate influence."

    timeout_secs: float = Field(
        default=60.0,
        gt=0,
        description="Per-attempt timeout for one completion call.",
    )

    max_retries: int = Field(
        default=1,
        ge=0,
        le=10,
        description="Additional attempts after a failed or timed-out completion call.",
    )

    retry_backoff_secs: float = Field(
        default=0.5,
        ge=0.0,
        description="Base delay before a retry; doubled per attempt, capped at 8s.",
    )

    history_window: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Number of most recent canonical messages sent as history.",
    )

    max_tokens: int = Field(default=1_000, ge=1)

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based)."""
        return min(self.retry_backoff_secs * (2 ** (attempt - 1)), BACKOFF_CAP_SECS)

    def worst_case_secs(self) -> float:
        """Longest a regeneration can spend in completion calls and backoff sleeps."""
        sleeps = sum(self.backoff_delay(a) for a in range(1, self.max_retries + 1))
        return self.timeout_secs * (self.max_retries + 1) + sleeps


class EditConfig(BaseModel):
    """Configuration for the edit coordinator."""

    use_store_lease: bool = True
    """Also hold a lease row in the store so edits are exclusive across processes."""

    lease_ttl_secs: float = Field(
        default=300.0,
        gt=0,
        description=(
            "Lifetime of a session edit lease. An expired lease can be taken over "
            "by another owner, so it must outlive the slowest regeneration."
        ),
    )


class RedraftConfig(BaseModel):
    """
    Top-level configuration for a Redraft chat client.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = RedraftConfig(
            regeneration=RegenerationConfig(model="anthropic/claude-haiku-3", timeout_secs=20),
            edit=EditConfig(lease_ttl_secs=120),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    regeneration: RegenerationConfig = Field(default_factory=RegenerationConfig)
    edit: EditConfig = Field(default_factory=EditConfig)

    @model_validator(mode="after")
    def validate_lease_outlives_regeneration(self) -> RedraftConfig:
        if not self.edit.use_store_lease:
            return self
        worst_case = self.regeneration.worst_case_secs()
        if self.edit.lease_ttl_secs <= worst_case:
            raise ValueError(
                "edit.lease_ttl_secs must exceed the slowest regeneration "
                f"(every attempt timing out plus backoff) = {worst_case:g}s"
            )
        return self

    @classmethod
    def default(cls) -> RedraftConfig:
        """Return a config instance with all defaults."""
        return cls()
