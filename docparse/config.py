"""Application configuration loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration – values are read from `.env` or the environment."""

    # Vision model (any OpenAI-compatible endpoint: Ollama, vLLM, DashScope …)
    vision_base_url: str = "http://localhost:11434/v1"
    vision_api_key: str = ""  # empty disables the vision provider; "unused" for keyless endpoints
    vision_model: str = "qwen2.5vl"

    # Paths
    base_dir: Path = Path(__file__).resolve().parent.parent
    storage_dir: Path = base_dir / "storage"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
