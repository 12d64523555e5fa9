from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    worker_count: int = 8
    queue_maxsize: int = 1000
    max_retries: int = 3
    retry_base_delay: float = 60.0
    retry_max_delay: float = 3600.0
    retry_sweep_interval_seconds: float = 30.0
    dispatch_grace_seconds: float = 60.0
    db_path: str = "/data/webhooks.db"
    log_level: str = "INFO"
    log_format: str = "pretty"
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance: int = 300
