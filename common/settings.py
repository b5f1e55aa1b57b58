import os
from typing import Literal, Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    jwt_issuer: str = os.getenv("JWT_ISSUER", "andar-bahar")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "andar_bahar")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    # Overrides the MySQL parts when set (e.g. sqlite:///./local.db)
    database_url: Optional[str] = os.getenv("DATABASE_URL")

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    rate_limit_enabled: bool = os.getenv("RATE_LIMIT_ENABLED", "false").lower() == "true"
    bet_rate_limit_requests: int = int(os.getenv("BET_RATE_LIMIT_REQUESTS", "20"))
    bet_rate_limit_window_seconds: int = int(os.getenv("BET_RATE_LIMIT_WINDOW_SECONDS", "10"))

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    kafka_enabled: bool = os.getenv("KAFKA_ENABLED", "false").lower() == "true"

    default_min_bet: int = int(os.getenv("DEFAULT_MIN_BET", "100"))
    default_max_bet: int = int(os.getenv("DEFAULT_MAX_BET", "100000"))
    # accumulate: repeat stakes on a side add to it; reject: one stake per side per round
    repeat_bet_policy: Literal["accumulate", "reject"] = os.getenv("REPEAT_BET_POLICY", "accumulate")

    store_retry_attempts: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    settlement_attempts: int = int(os.getenv("SETTLEMENT_ATTEMPTS", "3"))
    history_default_limit: int = int(os.getenv("HISTORY_DEFAULT_LIMIT", "10"))

    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+pymysql://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"

settings = Settings()
