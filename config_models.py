from dataclasses import dataclass, field


@dataclass
class AppConfig:
    name: str
    secret_key: str
    currency: str


@dataclass
class BillingConfig:
    grace_period_days: int
    webhook_secret: str
    webhook_tolerance: int
    checkout_period_days: int
    # provider price id -> tier slug
    price_tiers: dict[str, str] = field(default_factory=dict)


@dataclass
class JobsConfig:
    internal_token: str
