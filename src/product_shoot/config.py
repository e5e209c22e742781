"""Runtime configuration for the generation orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_BACKENDS = ("echo", "gemini")


@dataclass(slots=True)
class OrchestratorSettings:
    """Slot dispatch and settlement settings."""

    stagger_seconds: float = 1.0
    finished_task_retention_seconds: float = 300.0
    persist_retry_attempts: int = 3
    persist_retry_backoff_seconds: float = 0.5
    ledger_retry_attempts: int = 2
    ledger_retry_backoff_seconds: float = 0.5
    image_dir: Path = Path(".product_shoot_images")


@dataclass(slots=True)
class BackendSettings:
    """Primary/fallback image backend settings."""

    kind: str = "echo"
    base_url: str = ""
    api_key: str = ""
    primary_model: str = "gemini-3-pro-image-preview"
    fallback_model: str = "gemini-2.5-flash-image"
    timeout_seconds: float = 60.0
    primary_size_hint: int = 2048
    fallback_size_hint: int = 1024


@dataclass(slots=True)
class QuotaSettings:
    """Quota ledger settings."""

    ledger_url: str = ""
    initial_balance: int = 0
    auto_provision: bool = True
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ResumptionSettings:
    """Client-side task handle settings."""

    handle_dir: Path = Path(".product_shoot_handles")
    in_flight_grace_seconds: int = 600


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".product_shoot.db")
    sqlite_busy_timeout_ms: int = 5_000
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)
    quota: QuotaSettings = field(default_factory=QuotaSettings)
    resumption: ResumptionSettings = field(default_factory=ResumptionSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("PRODUCT_SHOOT_DB_PATH", ".product_shoot.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PRODUCT_SHOOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            orchestrator=OrchestratorSettings(
                stagger_seconds=float(os.getenv("PRODUCT_SHOOT_STAGGER_SECONDS", "1.0")),
                finished_task_retention_seconds=float(
                    os.getenv("PRODUCT_SHOOT_FINISHED_TASK_RETENTION_SECONDS", "300"),
                ),
                persist_retry_attempts=int(
                    os.getenv("PRODUCT_SHOOT_PERSIST_RETRY_ATTEMPTS", "3"),
                ),
                persist_retry_backoff_seconds=float(
                    os.getenv("PRODUCT_SHOOT_PERSIST_RETRY_BACKOFF_SECONDS", "0.5"),
                ),
                ledger_retry_attempts=int(os.getenv("PRODUCT_SHOOT_LEDGER_RETRY_ATTEMPTS", "2")),
                ledger_retry_backoff_seconds=float(
                    os.getenv("PRODUCT_SHOOT_LEDGER_RETRY_BACKOFF_SECONDS", "0.5"),
                ),
                image_dir=Path(os.getenv("PRODUCT_SHOOT_IMAGE_DIR", ".product_shoot_images")),
            ),
            backend=BackendSettings(
                kind=os.getenv("PRODUCT_SHOOT_BACKEND", "echo").strip().lower(),
                base_url=os.getenv("PRODUCT_SHOOT_BACKEND_BASE_URL", "").strip(),
                api_key=os.getenv("PRODUCT_SHOOT_BACKEND_API_KEY", ""),
                primary_model=os.getenv(
                    "PRODUCT_SHOOT_PRIMARY_MODEL",
                    "gemini-3-pro-image-preview",
                ),
                fallback_model=os.getenv(
                    "PRODUCT_SHOOT_FALLBACK_MODEL",
                    "gemini-2.5-flash-image",
                ),
                timeout_seconds=float(
                    os.getenv("PRODUCT_SHOOT_BACKEND_TIMEOUT_SECONDS", "60.0"),
                ),
                primary_size_hint=int(os.getenv("PRODUCT_SHOOT_PRIMARY_SIZE_HINT", "2048")),
                fallback_size_hint=int(os.getenv("PRODUCT_SHOOT_FALLBACK_SIZE_HINT", "1024")),
            ),
            quota=QuotaSettings(
                ledger_url=os.getenv("PRODUCT_SHOOT_LEDGER_URL", "").strip(),
                initial_balance=int(os.getenv("PRODUCT_SHOOT_INITIAL_BALANCE", "0")),
                auto_provision=_env_bool("PRODUCT_SHOOT_QUOTA_AUTO_PROVISION", default=True),
                request_timeout_seconds=float(
                    os.getenv("PRODUCT_SHOOT_LEDGER_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
            resumption=ResumptionSettings(
                handle_dir=Path(
                    os.getenv("PRODUCT_SHOOT_HANDLE_DIR", ".product_shoot_handles"),
                ),
                in_flight_grace_seconds=int(
                    os.getenv("PRODUCT_SHOOT_IN_FLIGHT_GRACE_SECONDS", "600"),
                ),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("PRODUCT_SHOOT_USER_ID", "default_user"),
                user_name=os.getenv("PRODUCT_SHOOT_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range or inconsistent values."""

        orchestrator = self.orchestrator
        if orchestrator.stagger_seconds < 0:
            raise ValueError("PRODUCT_SHOOT_STAGGER_SECONDS must be >= 0.")
        if orchestrator.finished_task_retention_seconds < 0:
            raise ValueError("PRODUCT_SHOOT_FINISHED_TASK_RETENTION_SECONDS must be >= 0.")
        if orchestrator.persist_retry_attempts <= 0:
            raise ValueError("PRODUCT_SHOOT_PERSIST_RETRY_ATTEMPTS must be a positive integer.")
        if orchestrator.ledger_retry_attempts <= 0:
            raise ValueError("PRODUCT_SHOOT_LEDGER_RETRY_ATTEMPTS must be a positive integer.")

        backend = self.backend
        if backend.kind not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported PRODUCT_SHOOT_BACKEND: {backend.kind!r}. "
                f"Use one of {SUPPORTED_BACKENDS}.",
            )
        if backend.timeout_seconds <= 0:
            raise ValueError("PRODUCT_SHOOT_BACKEND_TIMEOUT_SECONDS must be > 0.")
        if backend.fallback_size_hint <= 0 or backend.primary_size_hint <= 0:
            raise ValueError("Backend size hints must be positive integers.")
        if backend.fallback_size_hint > backend.primary_size_hint:
            raise ValueError(
                "PRODUCT_SHOOT_FALLBACK_SIZE_HINT must not exceed PRODUCT_SHOOT_PRIMARY_SIZE_HINT.",
            )
        if backend.kind == "gemini":
            if backend.base_url:
                _validate_http_url("PRODUCT_SHOOT_BACKEND_BASE_URL", backend.base_url)
            if not backend.api_key.strip():
                raise ValueError(
                    "PRODUCT_SHOOT_BACKEND_API_KEY is required for the gemini backend.",
                )

        if self.quota.ledger_url:
            _validate_http_url("PRODUCT_SHOOT_LEDGER_URL", self.quota.ledger_url)
        if self.quota.initial_balance < 0:
            raise ValueError("PRODUCT_SHOOT_INITIAL_BALANCE must be >= 0.")
        if self.resumption.in_flight_grace_seconds < 0:
            raise ValueError("PRODUCT_SHOOT_IN_FLIGHT_GRACE_SECONDS must be >= 0.")


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    """Read strict boolean flag from environment."""

    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
