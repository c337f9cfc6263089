from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    environment: str = "dev"  # "dev", "prod"
    debug: bool = True

    # ==========================================================================
    # DATABASE
    # ==========================================================================
    database_url: str = "sqlite:///./feedback_agent.db"

    # ==========================================================================
    # OPENAI (text generation capability)
    # ==========================================================================
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 1000  # Max tokens for generated labels/summaries

    # ==========================================================================
    # API SECURITY
    # ==========================================================================
    api_token: str = ""  # Required in production, optional in dev
    api_token_header: str = "X-API-Key"

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: str = "*"  # Comma-separated origins, or "*" for all

    # ==========================================================================
    # CONSENT & VALIDATION GATE
    # ==========================================================================
    min_text_length: int = 10
    max_text_length: int = 2000

    # ==========================================================================
    # QUEUE & RATE LIMITING (per tenant)
    # ==========================================================================
    queue_capacity: int = 500  # Max buffered events per tenant
    admission_rate_per_minute: int = 600  # Sustained admission into processing
    admission_burst: int = 100  # Token bucket size
    processing_batch_size: int = 100  # Max events per processing window

    # ==========================================================================
    # CLUSTERING & GENERATION
    # ==========================================================================
    min_cluster_size: int = 2  # Smaller clusters are kept as singletons
    cluster_similarity_threshold: float = 0.3  # Cosine similarity for membership
    generation_timeout: float = 30.0  # Seconds per generate() call
    generation_max_retries: int = 3
    generation_backoff_base: float = 0.5  # Seconds, doubled per retry
    max_concurrent_generations: int = 4  # Per tenant

    # ==========================================================================
    # SAFETY GUARD
    # ==========================================================================
    safety_max_label_length: int = 120
    safety_max_summary_length: int = 2000
    safety_max_action_length: int = 400
    safety_toxicity_threshold: float = 0.05  # Fraction of blocklisted words

    # ==========================================================================
    # APPROVAL
    # ==========================================================================
    recommendation_expiry_days: int = 30
    expiry_sweep_interval: int = 3600  # Seconds between scheduled sweeps

    # ==========================================================================
    # REDACTION RULES
    # ==========================================================================
    redaction_rules_path: Optional[str] = None  # JSON rule set, built-ins if unset

    # ==========================================================================
    # WORKERS
    # ==========================================================================
    worker_idle_wait: float = 5.0  # Seconds a tenant worker waits for new events
    alert_window_hours: int = 24  # error_count window for get_status

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "prod"

    @property
    def cors_origins_list(self) -> List[str]:
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]


settings = Settings()
