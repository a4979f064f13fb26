import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Also check current directory
if not os.getenv("API_BASE_URL"):
    load_dotenv()


class Settings:
    # Portal gateway
    # Local development server listens on 5000; production sits behind the portal domain
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:5000")
    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))

    # Group chat sync
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
    SYNC_MODE: str = os.getenv("SYNC_MODE", "replace").lower()  # replace or merge
    MESSAGE_PAGE_SIZE: int = int(os.getenv("MESSAGE_PAGE_SIZE", "50"))

    # Compose / display
    MESSAGE_CHAR_LIMIT: int = int(os.getenv("MESSAGE_CHAR_LIMIT", "500"))
    RUN_GAP_MS: int = int(os.getenv("RUN_GAP_MS", "300000"))  # 5 minutes

    # Session storage
    SESSION_DIR: Path = Path(os.getenv("SESSION_DIR", str(Path.home() / ".studygroups")))
    TOKEN_TTL_HOURS: int = int(os.getenv("TOKEN_TTL_HOURS", "24"))

    # Development
    DEBUG: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")

    if SYNC_MODE not in ("replace", "merge"):
        raise ValueError(f"SYNC_MODE must be 'replace' or 'merge', got '{SYNC_MODE}'")


settings = Settings()
