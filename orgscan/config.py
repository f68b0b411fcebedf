from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # GitHub
    GITHUB_TOKEN: str = ""
    GITHUB_API: str = "https://api.github.com"
    GITHUB_ORGS: str = (
        "redhat-best-practices-for-k8s,openshift,openshift-kni,"
        "redhat-openshift-ecosystem,redhatci"
    )
    REPO_LIMIT: int = 1000
    HTTP_TIMEOUT: int = 30
    HTTP_MAX_RETRIES: int = 3

    # Tracking issues (owner/repo); empty disables tracking
    TRACKING_REPO: str = ""

    # Paths
    CACHE_DIR: str = "caches"
    REPORT_DIR: str = "reports"
    LISTS_DIR: str = "lists"

    # Scan behaviour
    CACHE_TTL_HOURS: float = 6
    INACTIVITY_DAYS: int = 180
    MAX_WORKERS: int = 4
    FETCH_MAX_ATTEMPTS: int = 3
    FETCH_BACKOFF_BASE: float = 1.0
    FETCH_BACKOFF_FACTOR: float = 2.0
    SCAN_DEADLINE_MINUTES: float = 0

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def organizations(self) -> List[str]:
        return [org.strip() for org in self.GITHUB_ORGS.split(',') if org.strip()]
