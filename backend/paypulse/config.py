from pydantic_settings import BaseSettings
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from dotenv import load_dotenv
from loguru import logger
import os

# Load environment variables from .env file
load_dotenv()

# Secrets that may be overridden from Key Vault (env name -> vault secret name)
KEYVAULT_SECRETS = {
    "JWT_SECRET": "JWT-SECRET",
    "GOOGLE_CLIENT_SECRET": "GOOGLE-CLIENT-SECRET",
    "AZURE_OPENAI_KEY": "AZURE-OPENAI-KEY",
    "STRIPE_SECRET_KEY": "STRIPE-SECRET-KEY",
    "STRIPE_WEBHOOK_SECRET": "STRIPE-WEBHOOK-SECRET",
    "RESEND_API_KEY": "RESEND-API-KEY",
    "CRON_SECRET": "CRON-SECRET",
}

class Settings(BaseSettings):
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/google/callback"
    JWT_SECRET: str = "CHANGE_ME_SECRET"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_HOURS: int = 24
    DATABASE_URL: str = "sqlite:///./paypulse.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    AZURE_OPENAI_ENDPOINT: str = ""
    AZURE_OPENAI_KEY: str = ""
    AZURE_OPENAI_ENGINE: str = ""
    AZURE_OPENAI_API_VERSION: str = "2024-02-01"
    AZURE_OPENAI_MAX_RETRIES: int = 2
    AZURE_OPENAI_TIMEOUT: float = 60.0
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_MONTHLY: str = ""
    STRIPE_PRICE_YEARLY: str = ""
    RESEND_API_KEY: str = ""
    REMINDER_FROM_EMAIL: str = "Bill Calendar <onboarding@resend.dev>"
    FRONTEND_URL: str = "http://localhost:3000"
    APP_URL: str = "http://localhost:3000"
    CRON_SECRET: str = ""
    KEY_VAULT_URL: str = ""
    LOG_LEVEL: str = "INFO"

    class Config:
        case_sensitive = True

    @property
    def openai_configured(self) -> bool:
        return bool(self.AZURE_OPENAI_ENDPOINT and self.AZURE_OPENAI_KEY and self.AZURE_OPENAI_ENGINE)

    def load_secrets_from_keyvault(self):
        if os.getenv("USE_KEYVAULT", "false").lower() != "true":
            return
        if not self.KEY_VAULT_URL:
            logger.warning("USE_KEYVAULT is set but KEY_VAULT_URL is empty, skipping Key Vault")
            return
        credential = DefaultAzureCredential()
        client = SecretClient(vault_url=self.KEY_VAULT_URL, credential=credential)
        for field, secret_name in KEYVAULT_SECRETS.items():
            try:
                value = client.get_secret(secret_name).value
                if value:
                    setattr(self, field, value)
                else:
                    logger.warning(f"{secret_name} is empty in Key Vault.")
            except Exception as e:
                logger.error(f"Failed to load {secret_name} from Key Vault: {e}")

settings = Settings()
settings.load_secrets_from_keyvault()
