from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    public_url: str
    enforce_paywall: bool


@dataclass
class AnalysisBackendConfig:
    base_url: str
    timeout: int
    health_timeout: int
    max_retries: int


@dataclass
class StripeConfig:
    secret_key: str
    webhook_secret: str
    price_amount: int
    currency: str
    interval: str
    product_name: str
