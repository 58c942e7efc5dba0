from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List

class Settings(BaseSettings):
    # Kubernetes settings
    k8s_namespace: str = "jx"
    k8s_in_cluster: bool = False  # Set True when running inside K8s
    crd_group: str = "stagehand.dev"
    crd_version: str = "v1"

    # Which controllers this process runs: "build", "workflow" or both
    controllers: List[str] = ["build", "workflow"]
    dry_run: bool = False
    log_level: str = "INFO"

    # Build controller
    get_or_create_retry_interval: float = 20.0
    get_or_create_attempts: int = 3
    get_or_create_timeout: float = 60.0
    dev_environment: str = "dev"
    log_storage_url: str = ""
    git_reporting: bool = False
    target_url_template: str = ""

    # Workflow controller
    poll_interval: float = 20.0
    release_branches: List[str] = ["master"]
    default_promote_environment: str = "staging"
    no_merge_pull_request: bool = False
    no_wait_for_update_pipeline: bool = False
    # Process workflows and activities once, then exit
    no_watch: bool = False

    # Git provider
    git_api_url: str = "https://api.github.com"
    git_token: str = ""
    git_api_timeout: float = 30.0

    class Config:
        env_file = ".env"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
