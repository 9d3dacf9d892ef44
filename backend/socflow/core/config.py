from typing import Dict, List, Optional

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "SOCFlow Incident Orchestrator"
    APP_ENV: str = "development"
    PORT: int = 8000
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./socflow.db"

    # Local LLM (Ollama), only used when an assist mode is on
    OLLAMA_URL: str = Field(default="http://localhost:11434")
    OLLAMA_MODEL: str = Field(default="llama3:8b")
    OLLAMA_TIMEOUT_SECONDS: float = Field(default=60.0)
    AGENT_LLM_ASSIST: bool = Field(default=False)
    SYNTHESIS_LLM_ASSIST: bool = Field(default=False)

    # Threat intelligence
    OTX_API_KEY: Optional[str] = Field(default=None)
    OTX_BASE_URL: str = Field(default="https://otx.alienvault.com/api/v1")
    THREAT_INTEL_TIMEOUT_SECONDS: float = Field(default=10.0)
    THREAT_INTEL_CACHE_TTL_SECONDS: int = Field(default=3600)
    THREAT_INTEL_CACHE_MAX_ENTRIES: int = Field(default=10000)
    IOC_BLOCKLIST_PATH: str = Field(default="data/ioc/blocklist.json")
    IOC_ALLOWLIST_PATH: str = Field(default="data/ioc/allowlist.json")

    # Agent orchestration
    ENABLED_AGENTS: List[str] = Field(default_factory=list)
    AGENT_TIMEOUT_SECONDS: float = Field(default=20.0)
    ORCHESTRATOR_TIMEOUT_SECONDS: float = Field(default=60.0)

    # Synthesis / classification
    SYNTHESIS_MAX_RETRIES: int = Field(default=2)
    SYNTHESIS_RETRY_DELAY_SECONDS: float = Field(default=1.0)
    SYNTHESIS_PHASE_TIMEOUT_SECONDS: float = Field(default=30.0)
    CONFIDENCE_THRESHOLD: int = Field(default=70)
    PIPELINE_TIMEOUT_SECONDS: float = Field(default=120.0)
    ANALYSIS_CONFLICT_POLICY: str = Field(default="reject")  # reject | queue
    REQUIRE_OVERRIDE_COMMENT: bool = Field(default=True)

    # SIEM delivery
    SIEM_ENDPOINTS: Dict[str, str] = Field(default_factory=dict)
    SIEM_DELIVERY_TIMEOUT_SECONDS: float = Field(default=15.0)
    SIEM_RETRY_BASE_SECONDS: float = Field(default=5.0)
    SIEM_RETRY_FACTOR: float = Field(default=2.0)
    SIEM_RETRY_CAP_SECONDS: float = Field(default=300.0)
    SIEM_RETRY_JITTER: float = Field(default=0.2)
    SIEM_MAX_RETRIES: int = Field(default=5)

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
