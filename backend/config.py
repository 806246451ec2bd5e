from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True
    BASE_URL: str = "http://localhost:8000"

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    DB_NAME: str = "marketplace"
    MONGO_TRANSACTIONS: bool = True      # False sur un serveur standalone (pas de replica set)
    MONGO_TRANSACTION_RETRIES: int = 3

    # JWT (émis par le service d'auth, vérifié ici)
    JWT_SECRET: str = "changeme_minimum_32_chars_here_please"

    # Email transactionnel
    MAIL_API_URL: str = "https://api.mail.example.com/v1/send"
    MAIL_API_KEY: Optional[str] = None
    MAIL_FROM_ADDRESS: str = "noreply@marketplace.example"
    ADMIN_NOTIFICATION_EMAIL: Optional[str] = None

    # Auto-confirmation des livraisons
    AUTO_CONFIRM_SWEEP_ENABLED: bool = True
    AUTO_CONFIRM_SWEEP_INTERVAL_SECONDS: int = 3600

    # Rate limiting (slowapi)
    WITHDRAWAL_RATE_LIMIT: str = "10/minute"

    # Montants en kobo (1 NGN = 100 kobo)
    CURRENCY: str = "NGN"
    WITHDRAWAL_FEE_RATE: float = 0.015        # 1,5 %
    WITHDRAWAL_FIXED_FEE: int = 5000          # ₦50
    MIN_WITHDRAWAL_AMOUNT: int = 100000       # ₦1 000
    RETURN_WINDOW_DAYS: int = 7
    AUTO_CONFIRM_GRACE_DAYS: int = 2

    # Commission plateforme prélevée à la libération de l'escrow
    COMMISSION_RATE_PERCENT: float = 5.0
    COMMISSION_LOWER_THRESHOLD: int = 250000  # ₦2 500
    COMMISSION_UPPER_THRESHOLD: int = 500000  # ₦5 000
    COMMISSION_FLAT_FEE_LOW: int = 10000      # ₦100 sous le seuil bas
    COMMISSION_FLAT_FEE_HIGH: int = 20000     # ₦200 au-delà du seuil haut

    model_config = SettingsConfigDict(
        env_file=[".env", "../.env"],  # cherche dans backend/ puis dans la racine
        case_sensitive=True,
        extra="ignore",
    )


class SettlementConfig(BaseModel):
    """
    Paramètres métier injectés dans les moteurs (livraison, retraits, escrow).
    Construit depuis Settings en prod, directement dans les tests.
    """
    currency:                str   = "NGN"
    withdrawal_fee_rate:     float = 0.015
    withdrawal_fixed_fee:    int   = 5000
    min_withdrawal_amount:   int   = 100000
    return_window_days:      int   = 7
    auto_confirm_grace_days: int   = 2
    commission_rate_percent: float = 5.0
    commission_lower_threshold: int = 250000
    commission_upper_threshold: int = 500000
    commission_flat_fee_low:    int = 10000
    commission_flat_fee_high:   int = 20000

    @classmethod
    def from_settings(cls, s: Settings) -> "SettlementConfig":
        return cls(
            currency=s.CURRENCY,
            withdrawal_fee_rate=s.WITHDRAWAL_FEE_RATE,
            withdrawal_fixed_fee=s.WITHDRAWAL_FIXED_FEE,
            min_withdrawal_amount=s.MIN_WITHDRAWAL_AMOUNT,
            return_window_days=s.RETURN_WINDOW_DAYS,
            auto_confirm_grace_days=s.AUTO_CONFIRM_GRACE_DAYS,
            commission_rate_percent=s.COMMISSION_RATE_PERCENT,
            commission_lower_threshold=s.COMMISSION_LOWER_THRESHOLD,
            commission_upper_threshold=s.COMMISSION_UPPER_THRESHOLD,
            commission_flat_fee_low=s.COMMISSION_FLAT_FEE_LOW,
            commission_flat_fee_high=s.COMMISSION_FLAT_FEE_HIGH,
        )


settings = Settings()
