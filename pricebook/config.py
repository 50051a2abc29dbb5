from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    APP_ENV: str = "dev"
    APP_SECRET: str
    DB_URL: str
    JWT_ISS: str = "pricebook"
    JWT_EXP_MIN: int = 12*60
    TZ: str = "UTC"
    LOG_LEVEL: str = "INFO"
    # markup: margin1 on base cost, margin2 on (base + margin1)
    MARGIN1_RATE: Decimal = Decimal("0.13")
    MARGIN2_RATE: Decimal = Decimal("0.12")
    # bounded retries for the version-guarded ledger writes
    CAS_MAX_ATTEMPTS: int = 3
    LANDED_COST_INCLUDES_CHARGES: bool = False
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
settings = Settings()
