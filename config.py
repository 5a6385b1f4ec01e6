"""
Configuration management using Pydantic Settings with safe access wrapper
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Optional, Any


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",   # allow unknown env vars without error
    )

    # Application settings
    app_name: str = "NLP Pipeline"
    version: str = "1.0.0"
    debug: bool = False
    environment: str = "production"

    # Pipeline settings
    nlp_default_backend: str = "spacy"
    nlp_caching: bool = True
    nlp_request_timeout: Optional[float] = 300.0
    nlp_backends_file: Optional[str] = None
    max_text_length: int = 1000000

    # spaCy backend settings (ISO 639-1 code -> model package)
    spacy_models: Dict[str, str] = {
        "en": "en_core_web_sm",
        "fr": "fr_core_news_sm",
        "es": "es_core_news_sm",
        "de": "de_core_news_sm",
        "it": "it_core_news_sm",
        "pt": "pt_core_news_sm",
        "nl": "nl_core_news_sm",
    }
    enable_gpu: bool = False
    spacy_auto_download: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "nlp_pipeline.log"
    log_to_file: bool = True
    log_file_max_bytes: int = 10485760
    log_file_backup_count: int = 10

    # Monitoring
    enable_metrics: bool = True

    def validate_settings(self):
        """Validate critical settings on startup"""
        errors = []

        # Validate environment
        if self.environment not in ["development", "testing", "production"]:
            errors.append(f"Invalid environment: {self.environment}")

        if self.log_level.upper() not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            errors.append(f"Invalid log level: {self.log_level}")

        if self.nlp_request_timeout is not None and self.nlp_request_timeout <= 0:
            errors.append("Request timeout must be positive")

        if self.max_text_length <= 0:
            errors.append("Maximum text length must be positive")

        if not self.nlp_default_backend:
            errors.append("A default NLP backend is required")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")


class SafeSettings:
    """Safe wrapper for settings with fallback defaults"""

    def __init__(self, settings: Settings):
        settings.validate_settings()
        self._settings = settings
        # nlp_request_timeout has no fallback, None disables the deadline
        self._defaults = {
            "nlp_default_backend": "spacy",
            "nlp_caching": True,
            "max_text_length": 1000000,
            "spacy_models": {"en": "en_core_web_sm"},
            "log_level": "INFO",
            "log_dir": "logs",
            "log_file": "nlp_pipeline.log",
            "environment": "production",
            "debug": False,
            "enable_metrics": True,
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Safely get setting value with fallback"""
        value = getattr(self._settings, key, None)
        if value is None:
            value = self._defaults.get(key, default)
        return value

    def __getattr__(self, key: str) -> Any:
        """Proxy attribute access with safety"""
        return self.get(key)

    @property
    def raw(self) -> Settings:
        """Get raw settings object"""
        return self._settings


# Initialize settings with safety wrapper
_raw_settings = Settings()
settings = SafeSettings(_raw_settings)
