"""Configuration management for Wallpapy.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the WALLPAPY_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (WALLPAPY_* prefix)
2. .env file in the project root
3. Default values defined in WallpapyConfig

Example .env file:
    WALLPAPY_IMAGE_BACKEND=replicate
    WALLPAPY_REPLICATE_API_TOKEN=r8_...
    WALLPAPY_STYLE=Watercolour paintings
    WALLPAPY_GENERATION_INTERVAL_MINUTES=720

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The serving layer builds its services from it unless a custom instance is
passed to ``create_app``.

Usage Example
-------------
    from wallpapy.core.config import config

    print(config.image_backend)
    print(config.style_profile())

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: Holds the SQLite catalog database
- wallpapers_dir: Holds encoded wallpaper images and thumbnails

Style Profile
-------------
The style profile is the aesthetic target of every generation. It is owned
by configuration and read-only to the generation core:
- style: included in every prompt (e.g. "Digital paintings")
- contents: what kind of subjects to create
- negative_contents: what to avoid

See Also
--------
- WallpapyConfig: Full configuration class documentation
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from wallpapy.core.models import StyleProfile


class WallpapyConfig(BaseSettings):
    """Main configuration for Wallpapy.

    Values are loaded from environment variables with the WALLPAPY_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Style Profile:
        style_tag : str
            Name recorded on every artifact produced with this profile
        style : str
            Aesthetic included in every prompt
        contents : str
            What kind of images to create
        negative_contents : str
            What to avoid

    Feedback Settings:
        feedback_window : int
            Number of most recent liked / disliked prompts (K) fed back
        recent_prompt_window : int
            Number of most recent prompts listed as "do not repeat"
        max_prompt_length : int
            Maximum accepted length of a generated prompt in characters

    Prompt Model:
        openai_api_key : str | None
            API key for OpenAI (falls back to OPENAI_API_KEY when unset)
        prompt_model : str
            Chat model used to write image prompts

    Image Backends:
        image_backend : Literal["openai", "replicate", "local"]
            Which image generator to use
        openai_image_model, openai_image_size : str
            OpenAI Images API settings
        replicate_api_token, replicate_model, replicate_aspect_ratio : str
            Replicate predictions API settings
        local_model_id, device, torch_dtype, ... :
            Local diffusers pipeline settings

    Timeouts:
        prompt_timeout, image_timeout, finalize_timeout : float
            Per-stage timeouts in seconds

    Encoding:
        webp_quality, thumbnail_width, thumbnail_height, placeholder_size

    Scheduler:
        scheduler_enabled : bool
        generation_interval_minutes : int

    Paths:
        data_dir, wallpapers_dir, database_path : Path

    Server:
        server_host, server_port, log_level

    Notes
    -----
    - All directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the application
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="WALLPAPY_",
        case_sensitive=False,
    )

    # Style profile
    style_tag: str = Field(
        default="default",
        description="Name of the style profile, recorded on each artifact",
    )
    style: str = Field(
        default="Digital paintings",
        description="The style that should be included in every prompt",
    )
    contents: str = Field(
        default="Epic fantasy, surreal, abstract, landscapes",
        description="What kind of prompts to create",
    )
    negative_contents: str = Field(
        default="No people, don't go for highly complex",
        description="What to avoid including in the prompt",
    )

    # Feedback settings
    feedback_window: int = Field(
        default=5,
        description="Most recent liked and disliked prompts fed back to the prompt model",
        ge=1,
        le=50,
    )
    recent_prompt_window: int = Field(
        default=10,
        description="Most recent prompts the prompt model must not repeat",
        ge=0,
        le=100,
    )
    max_prompt_length: int = Field(
        default=1500,
        description="Maximum accepted prompt length in characters",
        ge=50,
    )

    # Prompt model
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key (OPENAI_API_KEY is used when unset)",
    )
    prompt_model: str = Field(
        default="gpt-4o-mini",
        description="Chat model used to write image prompts",
    )

    # Image backends
    image_backend: Literal["openai", "replicate", "local"] = Field(
        default="openai",
        description="Image generator backend",
    )
    openai_image_model: str = Field(default="dall-e-3")
    openai_image_size: str = Field(default="1792x1024")
    replicate_api_token: str | None = Field(
        default=None,
        description="Replicate API token (required for the replicate backend)",
    )
    replicate_model: str = Field(default="black-forest-labs/flux-schnell")
    replicate_aspect_ratio: str = Field(default="3:2")
    replicate_poll_interval: float = Field(default=1.0, gt=0.0)

    # Local diffusers backend
    local_model_id: str = Field(
        default="Tongyi-MAI/Z-Image-Turbo",
        description="HuggingFace model ID for the local backend",
    )
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(default="bfloat16")
    device: str = Field(default="cuda", description="Device to run inference on (cuda/cpu)")
    num_inference_steps: int = Field(default=9, ge=1, le=50)
    guidance_scale: float = Field(default=0.0)
    local_width: int = Field(default=1536, ge=512, le=2048)
    local_height: int = Field(default=1024, ge=512, le=2048)
    enable_attention_slicing: bool = Field(default=False)
    enable_model_cpu_offload: bool = Field(default=False)
    compile_model: bool = Field(default=False)
    models_dir: Path = Field(default=Path("models"), description="Directory to cache models")

    # Timeouts
    prompt_timeout: float = Field(default=120.0, gt=0.0, description="Prompt stage timeout (s)")
    image_timeout: float = Field(default=360.0, gt=0.0, description="Image stage timeout (s)")
    finalize_timeout: float = Field(default=60.0, gt=0.0, description="Finalize stage timeout (s)")

    # Encoding
    webp_quality: int = Field(default=90, ge=1, le=100)
    thumbnail_width: int = Field(default=854, ge=16)
    thumbnail_height: int = Field(default=480, ge=16)
    placeholder_size: int = Field(default=32, ge=4, le=100)

    # Scheduler
    scheduler_enabled: bool = Field(default=True)
    generation_interval_minutes: int = Field(
        default=360,
        description="Minutes between scheduled generations",
        ge=1,
    )

    # Paths
    data_dir: Path = Field(default=Path("data"), description="Directory for the catalog database")
    wallpapers_dir: Path = Field(
        default=Path("wallpapers"),
        description="Directory to save generated wallpapers",
    )
    database_path: Path | None = Field(
        default=None,
        description="SQLite catalog path (defaults to data_dir/catalog.db)",
    )

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=4560, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        if self.database_path is None:
            self.database_path = self.data_dir / "catalog.db"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.wallpapers_dir.mkdir(parents=True, exist_ok=True)

    def style_profile(self) -> StyleProfile:
        """Return the configured style profile."""
        return StyleProfile(
            tag=self.style_tag,
            style=self.style,
            contents=self.contents,
            negative_contents=self.negative_contents,
        )


# Global configuration instance
# Loads values from environment variables (WALLPAPY_* prefix) and .env file.
config = WallpapyConfig()
