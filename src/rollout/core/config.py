from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "rollout-controller"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"

    # Environment
    ENV: str = "dev"  # dev, staging, production
    DEBUG: bool = False

    # Scheduler
    ROLLOUTS_DIR: Optional[str] = None
    MAX_CONCURRENT_TICKS: int = 8
    COLLABORATOR_TIMEOUT_SECONDS: float = 10.0
    SHUTDOWN_GRACE_SECONDS: float = 30.0

    # Metric providers
    PROMETHEUS_URL: str = "http://prometheus:9090"
    CLOUDWATCH_ADDRESS: Optional[str] = None  # monitoring.<region>.amazonaws.com
    CLOUDWATCH_METRIC_INTERVAL: str = "1m"

    # Alert providers
    SLACK_WEBHOOK_URL: Optional[str] = None
    SLACK_CHANNEL: Optional[str] = None
    SLACK_USERNAME: str = "rollout-controller"
    WEBHOOK_URL: Optional[str] = None

    # Kubernetes
    K8S_IN_CLUSTER: bool = True
    K8S_CONTEXT: Optional[str] = None
    INGRESS_CLASS: str = "nginx"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True
    )

settings = Settings()
