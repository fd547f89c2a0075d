"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SANDBOX_MODES = ("strict", "permissive", "none")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")
    log_json: int | None = Field(alias="LOG_JSON", default=None)

    agent_max_steps: int = Field(alias="AGENT_MAX_STEPS", default=10)

    flow_max_depth: int = Field(alias="FLOW_MAX_DEPTH", default=5)
    flow_enable_guardrails: int = Field(alias="FLOW_ENABLE_GUARDRAILS", default=1)
    flow_loop_threshold: int = Field(alias="FLOW_LOOP_THRESHOLD", default=3)

    session_sandbox_mode: str = Field(alias="SESSION_SANDBOX_MODE", default="strict")
    session_trace_enabled: int = Field(alias="SESSION_TRACE_ENABLED", default=1)

    computer_sandbox_mode: str = Field(alias="COMPUTER_SANDBOX_MODE", default="permissive")
    computer_timeout_ms: int = Field(alias="COMPUTER_TIMEOUT_MS", default=30_000)
    computer_timeout_max_ms: int = Field(alias="COMPUTER_TIMEOUT_MAX_MS", default=600_000)
    computer_max_output_bytes: int = Field(alias="COMPUTER_MAX_OUTPUT_BYTES", default=32 * 1024)
    computer_env_allowlist: str = Field(
        alias="COMPUTER_ENV_ALLOWLIST", default="PATH,HOME,LANG,LC_ALL,TZ,R_LIBS_USER"
    )
    computer_python: str = Field(alias="COMPUTER_PYTHON", default="")
    computer_rscript: str = Field(alias="COMPUTER_RSCRIPT", default="Rscript")

    tool_suggest_max_ratio: float = Field(alias="TOOL_SUGGEST_MAX_RATIO", default=0.4)
    tool_repair_names: int = Field(alias="TOOL_REPAIR_NAMES", default=0)


def validate_settings(settings: Settings) -> None:
    problems: list[str] = []
    for key, value in (
        ("SESSION_SANDBOX_MODE", settings.session_sandbox_mode),
        ("COMPUTER_SANDBOX_MODE", settings.computer_sandbox_mode),
    ):
        if value.strip().lower() not in SANDBOX_MODES:
            problems.append(f"{key}(one of {', '.join(SANDBOX_MODES)})")

    positive = {
        "AGENT_MAX_STEPS": settings.agent_max_steps,
        "FLOW_MAX_DEPTH": settings.flow_max_depth,
        "FLOW_LOOP_THRESHOLD": settings.flow_loop_threshold,
        "COMPUTER_TIMEOUT_MS": settings.computer_timeout_ms,
        "COMPUTER_TIMEOUT_MAX_MS": settings.computer_timeout_max_ms,
        "COMPUTER_MAX_OUTPUT_BYTES": settings.computer_max_output_bytes,
    }
    for key, value in positive.items():
        if value < 1:
            problems.append(f"{key}(must be >= 1)")

    if settings.computer_timeout_ms > settings.computer_timeout_max_ms:
        problems.append("COMPUTER_TIMEOUT_MS(exceeds COMPUTER_TIMEOUT_MAX_MS)")
    if not 0.0 <= settings.tool_suggest_max_ratio <= 1.0:
        problems.append("TOOL_SUGGEST_MAX_RATIO(between 0 and 1)")

    if problems:
        keys = ", ".join(sorted(set(problems)))
        raise ValueError(f"invalid configuration: {keys}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
