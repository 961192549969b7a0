"""Configuration loading for herald."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("herald.config")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep
    levels: dict = field(default_factory=dict)  # per-logger overrides, e.g. {"herald.dispatcher": "DEBUG"}


@dataclass
class EngineConfig:
    poll_interval: int = 30  # seconds between queue sweeps
    task_check_interval: int = 60  # seconds between scheduled task checks
    digest_check_interval: int = 60  # seconds between cron digest checks
    batch_size: int = 50  # max queue items per sweep
    max_concurrency: int = 5  # items processed in parallel within a sweep
    item_timeout: float = 120.0  # overall deadline per queue item (seconds)
    channel_timeout: float = 15.0  # per-channel send deadline (seconds)
    claim_ttl_minutes: int = 10  # a claim older than this can be taken over
    urgent_priority: int = 8  # items at or above this bypass quiet hours
    max_generation_attempts: int = 2  # initial attempt + one retry
    default_expiry_hours: int = 24  # expires_at for producer-created items


@dataclass
class ThrottleConfig:
    """Feedback-driven proactive level throttle."""
    enabled: bool = True
    window: int = 20  # most recent rated items considered
    min_samples: int = 10  # rated items required before acting
    helpful_threshold: float = 0.30  # downgrade when helpful ratio is below this


@dataclass
class GeneratorConfig:
    """Message text generation (Claude CLI)."""
    command: str = "claude"
    model: str = "haiku"
    timeout: float = 60.0


@dataclass
class EmailConfig:
    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""


@dataclass
class SmsConfig:
    """Twilio SMS configuration."""
    enabled: bool = False
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    api_url: str = "https://api.twilio.com"


@dataclass
class WhatsAppConfig:
    """Twilio WhatsApp configuration (reuses the Twilio account from [sms] when empty)."""
    enabled: bool = False
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    api_url: str = "https://api.twilio.com"


@dataclass
class TelegramConfig:
    enabled: bool = False
    bot_token: str = ""
    api_url: str = "https://api.telegram.org"


@dataclass
class IdentityConfig:
    """Identity/preferences learning webhook that receives feedback signals."""
    enabled: bool = False
    url: str = ""
    token: str = ""
    timeout: float = 10.0


@dataclass
class DigestConfig:
    """Cron-driven digest (defined in user config)."""
    name: str
    cron: str  # cron expression, evaluated in user's timezone
    event_type: str = "daily_summary"
    priority: int = 5
    context: dict = field(default_factory=dict)


@dataclass
class UserConfig:
    """Per-user configuration."""
    display_name: str = ""
    email_addresses: list[str] = field(default_factory=list)  # fallback email destination
    timezone: str = "UTC"  # user's timezone for digest scheduling
    team_id: str = ""
    digests: list[DigestConfig] = field(default_factory=list)


@dataclass
class Config:
    bot_name: str = "Herald"  # Signs level-change disclosures
    db_path: Path = field(default_factory=lambda: Path("data/herald.db"))
    engine: EngineConfig = field(default_factory=EngineConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    sms: SmsConfig = field(default_factory=SmsConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    users: dict[str, UserConfig] = field(default_factory=dict)
    users_dir: Path | None = None  # config/users/ directory for per-user TOML files
    lock_path: Path = field(default_factory=lambda: Path("/tmp/herald-scheduler.lock"))

    def get_user(self, user_id: str) -> UserConfig | None:
        """Get user config by id. Returns None if user not configured."""
        return self.users.get(user_id)

    def user_email(self, user_id: str) -> str | None:
        """First configured email address for a user, if any."""
        user_config = self.users.get(user_id)
        if user_config and user_config.email_addresses:
            return user_config.email_addresses[0]
        return None


def _parse_user_data(user_data: dict, user_id: str) -> UserConfig:
    """Parse a user data dict (from main config or per-user file) into UserConfig."""
    digests = []
    for d in user_data.get("digests", []):
        digests.append(DigestConfig(
            name=d.get("name", ""),
            cron=d.get("cron", ""),
            event_type=d.get("event_type", "daily_summary"),
            priority=d.get("priority", 5),
            context=d.get("context", {}),
        ))

    return UserConfig(
        display_name=user_data.get("display_name", user_id),
        email_addresses=user_data.get("email_addresses", []),
        timezone=user_data.get("timezone", "UTC"),
        team_id=user_data.get("team_id", ""),
        digests=digests,
    )


def load_user_configs(users_dir: Path) -> dict[str, UserConfig]:
    """
    Load per-user config files from a directory.

    Each .toml file in the directory represents one user.
    Filename (without .toml) = user_id.
    """
    users = {}
    if not users_dir.is_dir():
        return users

    for toml_file in sorted(users_dir.glob("*.toml")):
        # Skip example files (e.g., alice.example.toml)
        if ".example" in toml_file.stem:
            continue
        user_id = toml_file.stem
        try:
            with open(toml_file, "rb") as f:
                user_data = tomli.load(f)
            users[user_id] = _parse_user_data(user_data, user_id)
            logger.debug("Loaded per-user config for %s from %s", user_id, toml_file)
        except Exception as e:
            logger.error("Error loading user config %s: %s", toml_file, e)

    return users


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/herald/config.toml",
            Path("/etc/herald/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path, "rb") as f:
        data = tomli.load(f)

    config = Config()

    if "bot_name" in data:
        config.bot_name = data["bot_name"]

    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "lock_path" in data:
        config.lock_path = Path(data["lock_path"])

    if "users" in data:
        for user_id, user_data in data["users"].items():
            config.users[user_id] = _parse_user_data(user_data, user_id)

    # Per-user files take precedence over [users] section in main config
    users_dir = config_path.parent / "users"
    if users_dir.is_dir():
        config.users_dir = users_dir
        config.users.update(load_user_configs(users_dir))

    if "engine" in data:
        eng = data["engine"]
        config.engine = EngineConfig(
            poll_interval=eng.get("poll_interval", 30),
            task_check_interval=eng.get("task_check_interval", 60),
            digest_check_interval=eng.get("digest_check_interval", 60),
            batch_size=eng.get("batch_size", 50),
            max_concurrency=eng.get("max_concurrency", 5),
            item_timeout=eng.get("item_timeout", 120.0),
            channel_timeout=eng.get("channel_timeout", 15.0),
            claim_ttl_minutes=eng.get("claim_ttl_minutes", 10),
            urgent_priority=eng.get("urgent_priority", 8),
            max_generation_attempts=eng.get("max_generation_attempts", 2),
            default_expiry_hours=eng.get("default_expiry_hours", 24),
        )

    if "throttle" in data:
        th = data["throttle"]
        config.throttle = ThrottleConfig(
            enabled=th.get("enabled", True),
            window=th.get("window", 20),
            min_samples=th.get("min_samples", 10),
            helpful_threshold=th.get("helpful_threshold", 0.30),
        )

    if "generator" in data:
        gen = data["generator"]
        config.generator = GeneratorConfig(
            command=gen.get("command", "claude"),
            model=gen.get("model", "haiku"),
            timeout=gen.get("timeout", 60.0),
        )

    if "email" in data:
        email = data["email"]
        config.email = EmailConfig(
            enabled=email.get("enabled", False),
            smtp_host=email.get("smtp_host", ""),
            smtp_port=email.get("smtp_port", 587),
            smtp_user=email.get("smtp_user", ""),
            smtp_password=email.get("smtp_password", ""),
            from_address=email.get("from_address", ""),
        )

    if "sms" in data:
        sms = data["sms"]
        config.sms = SmsConfig(
            enabled=sms.get("enabled", False),
            account_sid=sms.get("account_sid", ""),
            auth_token=sms.get("auth_token", ""),
            from_number=sms.get("from_number", ""),
            api_url=sms.get("api_url", "https://api.twilio.com"),
        )

    if "whatsapp" in data:
        wa = data["whatsapp"]
        config.whatsapp = WhatsAppConfig(
            enabled=wa.get("enabled", False),
            account_sid=wa.get("account_sid", ""),
            auth_token=wa.get("auth_token", ""),
            from_number=wa.get("from_number", ""),
            api_url=wa.get("api_url", "https://api.twilio.com"),
        )

    if "telegram" in data:
        tg = data["telegram"]
        config.telegram = TelegramConfig(
            enabled=tg.get("enabled", False),
            bot_token=tg.get("bot_token", ""),
            api_url=tg.get("api_url", "https://api.telegram.org"),
        )

    if "identity" in data:
        ident = data["identity"]
        config.identity = IdentityConfig(
            enabled=ident.get("enabled", False),
            url=ident.get("url", ""),
            token=ident.get("token", ""),
            timeout=ident.get("timeout", 10.0),
        )

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
            levels=log.get("levels", {}),
        )

    # Environment variable overrides for secrets (allows EnvironmentFile= usage)
    _env_secret_overrides = [
        ("HERALD_SMTP_PASSWORD", "email", "smtp_password"),
        ("HERALD_TWILIO_AUTH_TOKEN", "sms", "auth_token"),
        ("HERALD_TWILIO_AUTH_TOKEN", "whatsapp", "auth_token"),
        ("HERALD_TELEGRAM_BOT_TOKEN", "telegram", "bot_token"),
        ("HERALD_IDENTITY_TOKEN", "identity", "token"),
    ]
    for env_var, section, field_name in _env_secret_overrides:
        val = os.environ.get(env_var)
        if val:
            setattr(getattr(config, section), field_name, val)

    return config
