from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

from lumi.tester.utils.logger import get_logger

load_dotenv(verbose=True)
logger = get_logger(__name__)

APK_RESOURCES_DIR = Path(__file__).parent.joinpath("resources", "apk")


class LumiSettings(BaseSettings):
    LUMI_SPEED: str = "normal"
    LUMI_UNICODE: bool = False
    LUMI_HEADLESS: bool = False
    LUMI_CDP_ENDPOINT: str | None = None
    LUMI_VIDEO_RECORD: bool = False
    LUMI_LOG_LEVEL: str = "INFO"

    LUMI_ADB_PATH: str | None = None
    LUMI_IDB_PATH: str | None = None
    ADB_HOST: str | None = None
    ADB_PORT: int | None = None

    WDA_HOST: str = "localhost"
    WDA_PORT: int = 8100

    PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH: str | None = None
    PLAYWRIGHT_FFMPEG_PATH: str | None = None
    TESSERACT_CMD: str | None = None

    LUMI_ADB_KEYBOARD_APK: str | None = None
    LUMI_MIRROR_APK: str | None = None

    ANDROID_SDK_ROOT: str | None = None
    ANDROID_HOME: str | None = None

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = LumiSettings()


def resolve_apk(configured: str | None, filename: str) -> Path:
    """The configured APK path, otherwise the copy under the package resources."""
    if configured:
        return Path(configured).expanduser()
    return APK_RESOURCES_DIR / filename
