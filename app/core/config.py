from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Ledger defaults for payments created from approved slips
    slip_payment_method: str = Field("Bank Transfer", alias="SLIP_PAYMENT_METHOD")
    slip_payment_note: str = Field(
        "Approved from student portal slip upload", alias="SLIP_PAYMENT_NOTE"
    )
    payment_ledger_limit: int = Field(100, alias="PAYMENT_LEDGER_LIMIT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
