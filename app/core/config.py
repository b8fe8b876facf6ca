# app/core/config.py

import os
from dotenv import load_dotenv


def load_config():
    """Carga el .env en el entorno del proceso (no pisa variables ya definidas)."""
    load_dotenv()
    settings.reload()
    return settings


class Settings:
    def __init__(self):
        self.reload()

    def reload(self):
        # Base de datos (SQLite por defecto en desarrollo)
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./lightpost.db")

        # Nodos LND
        self.LND_NETWORK: str = os.getenv("LND_NETWORK", "regtest")
        self.LND_RPC_TIMEOUT: float = float(os.getenv("LND_RPC_TIMEOUT", "10"))

        # Pool de sesiones
        self.NODE_POOL_MAX_SESSIONS: int = int(os.getenv("NODE_POOL_MAX_SESSIONS", "256"))
        self.NODE_POOL_IDLE_TTL: float = float(os.getenv("NODE_POOL_IDLE_TTL", "900"))
        self.NODE_POOL_REAP_INTERVAL: float = float(os.getenv("NODE_POOL_REAP_INTERVAL", "60"))

        # Precio de un upvote (sats)
        self.POST_UPVOTE_PRICE_SAT: int = int(os.getenv("POST_UPVOTE_PRICE_SAT", "100"))

        # JWT de usuarios
        self.TOKEN_KEY: str = os.getenv("TOKEN_KEY", "change-me")
        self.TOKEN_EXPIRES_HOURS: int = int(os.getenv("TOKEN_EXPIRES_HOURS", "2"))

        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
