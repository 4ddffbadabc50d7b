from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Proficiency Test Platform", validation_alias="OPENROUTER_TITLE")

	# Speech-to-Text language for candidate recordings
	speech_language_code: str = Field(default="en-US", validation_alias="SPEECH_LANGUAGE_CODE")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=240, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed admin user
	seed_username: str | None = Field(default=None, validation_alias="SEED_USERNAME")
	seed_password_plain: str | None = Field(default=None, validation_alias="SEED_PASSWORD")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Uploaded audio, passages and candidate recordings
	upload_dir: str = Field(default="uploads", validation_alias="UPLOAD_DIR")
	audio_max_bytes: int = Field(default=100 * 1024 * 1024, validation_alias="AUDIO_MAX_BYTES")
	recording_max_bytes: int = Field(default=50 * 1024 * 1024, validation_alias="RECORDING_MAX_BYTES")

	# AI endpoints: requests per user per window
	ai_rate_limit_max: int = Field(default=100, validation_alias="AI_RATE_LIMIT_MAX")
	ai_rate_limit_window_seconds: int = Field(default=15 * 60, validation_alias="AI_RATE_LIMIT_WINDOW_SECONDS")

	# Archived sessions are purged after this many days
	session_retention_days: int = Field(default=30, validation_alias="SESSION_RETENTION_DAYS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# Session client
	api_base_url: str = Field(default="http://localhost:8000", validation_alias="API_BASE_URL")
	client_max_attempts: int = Field(default=3, validation_alias="CLIENT_MAX_ATTEMPTS")
	client_backoff_seconds: float = Field(default=0.5, validation_alias="CLIENT_BACKOFF_SECONDS")
	client_timeout_seconds: float = Field(default=30.0, validation_alias="CLIENT_TIMEOUT_SECONDS")
	# Quiet period after the last edit before a draft is saved
	client_autosave_seconds: float = Field(default=2.0, validation_alias="CLIENT_AUTOSAVE_SECONDS")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
