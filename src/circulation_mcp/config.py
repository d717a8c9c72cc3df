"""Configuration management for the Circulation MCP Server.

Two concerns live here:
1. Server Metadata - name, version and transport for the MCP handshake
2. Circulation Policy - loan periods, renewal caps, hold windows and fine rates

Everything is environment driven (``CIRCULATION_`` prefix) and validated with
Pydantic v2 so that a misconfigured terminal fails at startup, not mid-scan.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Permission codes understood by the coordinator.
ALL_PERMISSIONS: tuple[str, ...] = (
    "transactions.view",
    "transactions.borrow",
    "transactions.return",
    "reservations.view",
    "reservations.manage",
    "fines.view",
    "fines.manage",
    "books.update",
)


class CirculationPolicy(BaseModel):
    """Borrowing policy constants consumed by the ledger and the queue manager.

    Kept separate from ``ServerConfig`` so components can be constructed in
    tests with an explicit policy and no environment.
    """

    loan_period_days: int = Field(default=14, ge=1)
    max_renewals: int = Field(default=2, ge=0)
    hold_window_hours: int = Field(default=48, ge=1)
    reservation_request_days: int = Field(default=30, ge=1)

    fine_per_day: float = Field(default=50.0, ge=0.0)
    fine_grace_period_days: int = Field(default=0, ge=0)
    max_fine_amount: float | None = Field(default=None, ge=0.0)
    lost_book_fine: float = Field(default=1000.0, ge=0.0)

    # Borrowing is blocked once unpaid fines reach this amount
    fine_block_threshold: float = Field(default=500.0, ge=0.0)
    default_max_books: int = Field(default=5, ge=0)


class ServerConfig(BaseSettings):
    """MCP server configuration.

    Field groups:
    - Server metadata for the protocol handshake
    - Database and transport settings
    - Terminal capabilities (the permission set granted to this terminal)
    - Circulation policy constants
    """

    model_config = SettingsConfigDict(
        env_prefix="CIRCULATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Server Metadata ===

    server_name: str = Field(
        default="library-circulation",
        description="MCP server name used in protocol handshake",
        pattern=r"^[a-z0-9-]+$",
    )

    server_version: str = Field(
        default="0.1.0",
        description="Server version for capability negotiation",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    # === Database Configuration ===

    database_path: Path = Field(
        default=Path("data/circulation.db"),
        description="SQLite database file path",
    )

    database_url: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL; overrides database_path when set",
    )

    # === Transport Configuration ===

    transport: str = Field(
        default="stdio",
        description="Primary transport mechanism",
        pattern=r"^(stdio|streamable_http)$",
    )

    http_host: str = Field(default="127.0.0.1")

    http_port: int = Field(default=8080, ge=1024, le=65535)

    # === Terminal Capabilities ===

    terminal_actor_id: str = Field(
        default="mcp_terminal",
        description="Actor recorded as processed_by for operations from this terminal",
    )

    terminal_permissions: list[str] = Field(
        default_factory=lambda: list(ALL_PERMISSIONS),
        description="Permission codes already granted to this terminal by the auth service",
    )

    # === Development Configuration ===

    debug: bool = Field(default=False)

    log_level: str = Field(
        default="INFO",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    # === Circulation Policy ===

    loan_period_days: int = Field(default=14, ge=1, le=120)
    max_renewals: int = Field(default=2, ge=0, le=10)
    hold_window_hours: int = Field(default=48, ge=1)
    reservation_request_days: int = Field(default=30, ge=1, le=90)

    fine_per_day: float = Field(default=50.0, ge=0.0, le=1000.0)
    fine_grace_period_days: int = Field(default=0, ge=0)
    max_fine_amount: float | None = Field(default=None, ge=0.0)
    lost_book_fine: float = Field(default=1000.0, ge=0.0)
    fine_block_threshold: float = Field(default=500.0, ge=0.0)
    default_max_books: int = Field(default=5, ge=0)

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Resolve the database path and make sure its directory exists."""
        abs_path = v.absolute()
        abs_path.parent.mkdir(parents=True, exist_ok=True)

        if not abs_path.parent.is_dir():
            raise ValueError(f"Database directory {abs_path.parent} is not accessible")

        return abs_path

    @field_validator("terminal_permissions")
    @classmethod
    def validate_permissions(cls, v: list[str]) -> list[str]:
        unknown = sorted(set(v) - set(ALL_PERMISSIONS))
        if unknown:
            raise ValueError(f"Unknown permission codes: {', '.join(unknown)}")
        return v

    @model_validator(mode="after")
    def validate_fine_cap(self) -> "ServerConfig":
        """A fine cap below one day's fine makes the daily rate meaningless."""
        if self.max_fine_amount is not None and self.max_fine_amount < self.fine_per_day:
            raise ValueError("max_fine_amount must be at least fine_per_day")
        return self

    @property
    def is_development(self) -> bool:
        return self.debug or self.log_level == "DEBUG"

    @property
    def server_info(self) -> dict[str, str]:
        """Server information sent during MCP initialization."""
        return {
            "name": self.server_name,
            "version": self.server_version,
            "transport": self.transport,
        }

    @property
    def policy(self) -> CirculationPolicy:
        """Circulation policy view of this configuration."""
        return CirculationPolicy(
            loan_period_days=self.loan_period_days,
            max_renewals=self.max_renewals,
            hold_window_hours=self.hold_window_hours,
            reservation_request_days=self.reservation_request_days,
            fine_per_day=self.fine_per_day,
            fine_grace_period_days=self.fine_grace_period_days,
            max_fine_amount=self.max_fine_amount,
            lost_book_fine=self.lost_book_fine,
            fine_block_threshold=self.fine_block_threshold,
            default_max_books=self.default_max_books,
        )

    def get_database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.database_path}"


# === Global Configuration Instance ===


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: ServerConfig | None = None


def get_config() -> ServerConfig:
    """Get or create the global configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = ServerConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]
