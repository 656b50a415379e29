"""Runtime configuration, read from environment variables (and a local .env).

Every value has a default that matches a stock kiosk container: Chromium at
/usr/bin/chromium, a persistent profile under /chrome-profiles and a
1920x1080 display. Malformed values raise a ValidationError at startup.
"""

from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DisplaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DISPLAY_", env_file=".env", extra="ignore")

    width: int = 1920
    height: int = 1080


class BrowserSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    executable_path: str = Field("/usr/bin/chromium", validation_alias="BROWSER_EXECUTABLE")
    # When False we only attach to an already running browser on cdp_port.
    launch: bool = Field(True, validation_alias="BROWSER_LAUNCH")
    cdp_host: str = Field("127.0.0.1", validation_alias="CDP_HOST")
    cdp_port: int = Field(9222, validation_alias="CDP_PORT")
    profiles_dir: Path = Field(Path("/chrome-profiles"), validation_alias="PROFILES_DIR")
    profile_name: str = Field("profile1", validation_alias="PROFILE_NAME")
    # Whitespace separated in the environment.
    extra_args: Annotated[list[str], NoDecode] = Field(default_factory=list, validation_alias="BROWSER_EXTRA_ARGS")

    @field_validator("extra_args", mode="before")
    @classmethod
    def _split_args(cls, value):
        if isinstance(value, str):
            return value.split()
        return value

    @property
    def profile_path(self) -> Path:
        return self.profiles_dir / self.profile_name

    @property
    def cdp_http_url(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"


class Settings(BaseSettings):
    """Server settings. The nested groups read their own variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    host: str = Field("127.0.0.1", validation_alias="SERVER_HOST")
    port: int = Field(3000, validation_alias="SERVER_PORT")
    log_level: str = Field("info", validation_alias="LOG_LEVEL")
    # Applies to every CDP command, including one-shot script evaluation.
    command_timeout: float = Field(30.0, validation_alias="COMMAND_TIMEOUT")
    navigation_timeout: float = Field(30.0, validation_alias="NAVIGATION_TIMEOUT")
    # Aliased so X11's DISPLAY variable is never read as this group.
    display: DisplaySettings = Field(default_factory=DisplaySettings, validation_alias="KIOSK_DISPLAY")
    browser: BrowserSettings = Field(default_factory=BrowserSettings, validation_alias="KIOSK_BROWSER")

    @field_validator("log_level")
    @classmethod
    def _lower_log_level(cls, value: str) -> str:
        return value.strip().lower()

    def chromium_args(self) -> list[str]:
        """Command line flags for a kiosk-mode Chromium."""
        return [
            f"--remote-debugging-port={self.browser.cdp_port}",
            f"--user-data-dir={self.browser.profile_path}",
            "--no-sandbox",
            "--kiosk",
            "--no-first-run",
            "--no-default-browser-check",
            "--use-fake-ui-for-media-stream",
            "--use-fake-device-for-media-stream",
            "--enable-audio-service",
            "--alsa-output-device=default",
            "--disable-dev-shm-usage",
            "--disable-features=TranslateUI",
            "--disable-gpu",
            "--window-position=0,0",
            f"--window-size={self.display.width},{self.display.height}",
            *self.browser.extra_args,
        ]


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings()
