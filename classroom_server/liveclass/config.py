from pathlib import Path
import os

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict


class LiveClassSettings(BaseSettings):
    model_config = SettingsConfigDict(
        # Priority: environment variables > .env file
        env_prefix="LIVECLASS_",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=True,
    )

    # start-stream / join-stream must carry a ticket minted by the REST layer
    REQUIRE_TICKET: bool = True
    TICKET_MAX_AGE_SECONDS: int = 300
    # Connections silent for longer than this are evicted by the sweeper
    HEARTBEAT_TIMEOUT_SECONDS: int = 90
    SWEEP_INTERVAL_SECONDS: int = 30
    # 0 ends the stream as soon as the host socket drops
    HOST_GRACE_SECONDS: float = 10
    # 0 = no limit
    MAX_SESSION_SECONDS: int = 0
    CHAT_MAX_LENGTH: int = 1000
    # Untargeted offers reach every viewer; kept for older clients
    ALLOW_BROADCAST_OFFER: bool = True


# Load .env before the Settings instance is created so values from the file are
# visible through os.environ.
_here = Path(__file__).resolve().parent
for _env_path in (
    _here.parent.parent / ".env",  # repository root
    _here.parent / ".env",         # classroom_server/.env
    Path(os.getcwd()) / ".env",
):
    if _env_path.exists():
        load_dotenv(_env_path, override=False)
        break

config = LiveClassSettings()
