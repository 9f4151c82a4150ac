from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Model Switcher"
    debug: bool = False

    # Paths
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "switcher.db"

    # Agents
    use_multi_model: bool = True
    default_platform: str = "anthropic"  # anthropic | openai | llama | gemini
    system_prompt: str = ""
    max_tokens: int = 1024
    context_window: int = 5  # most recent messages sent as context
    final_commit_delay: float = 0.5  # seconds between final commit and indicator clear

    # Registry
    inactivity_threshold: float = 8 * 60 * 60  # seconds
    sweep_interval: float = 5.0

    # Anthropic
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    anthropic_base_url: str = "https://api.anthropic.com"

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"

    # Llama (Ollama); empty endpoint means not configured
    llama_api_endpoint: str = ""
    llama_model_name: str = "llama2"

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    http_timeout: float = 60.0

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "SWITCHER_",
    }


settings = Settings()
