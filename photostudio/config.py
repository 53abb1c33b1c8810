from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # HTTP server
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # Database
    DATABASE_URL: Optional[str] = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "photostudio"
    DB_USER: str = "photostudio"
    DB_PASSWORD: str = ""
    RUN_MIGRATIONS: bool = True

    # AI backend: "gemini" or "openrouter"
    IMAGE_BACKEND: str = "gemini"

    # Google Gemini (google-genai SDK)
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.0-flash-exp"
    GEMINI_VISION_MODEL: str = "gemini-2.0-flash"

    # OpenRouter (chat/completions with image output)
    OPENROUTER_API_KEY: Optional[str] = None
    OPENROUTER_IMAGE_MODEL: str = "google/gemini-2.5-flash-image-preview"
    OPENROUTER_VISION_MODEL: str = "anthropic/claude-3.5-sonnet"
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1/chat/completions"

    # Image generation
    IMAGE_TIMEOUT_SECONDS: float = 180.0
    VISION_TIMEOUT_SECONDS: float = 60.0
    IMAGE_MAX_RETRIES: int = 3
    IMAGE_RETRY_BASE_DELAY: float = 2.0
    IMAGE_RETRY_MAX_DELAY: float = 30.0
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_TIMEOUT_SECONDS: float = 60.0

    # Generation pipeline
    GENERATION_CONCURRENCY: int = 2  # Slots generated in parallel within one job
    QUEUE_WORKERS: int = 2
    PERSIST_MAX_RETRIES: int = 3
    DEFAULT_ASPECT_RATIO: str = "4:5"
    DEFAULT_RESOLUTION: str = "4K"

    # Aspect Ratios
    AVAILABLE_ASPECT_RATIOS: List[str] = [
        "1:1",    # Square
        "4:5",    # Vertical (marketplace card)
        "3:4",    # Vertical
        "4:3",    # Horizontal
        "16:9",   # Wide banner
        "9:16"    # Vertical (stories)
    ]
    AVAILABLE_RESOLUTIONS: List[str] = ["1K", "2K", "4K"]

    # File storage
    UPLOAD_LOCAL_PATH: str = "uploads"
    UPLOAD_BASE_URL: Optional[str] = None

    # Event stream
    SSE_HEARTBEAT_SECONDS: float = 15.0
    SUBSCRIBER_QUEUE_SIZE: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def image_model(self) -> str:
        if self.IMAGE_BACKEND == "openrouter":
            return self.OPENROUTER_IMAGE_MODEL
        return self.GEMINI_MODEL

settings = Settings()
