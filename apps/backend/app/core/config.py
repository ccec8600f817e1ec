from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "PagePulse Analytics"
    database_url: str = ""
    default_project_id: str = "default"

    # interactions recorded on these paths never reach the event store
    admin_path_prefixes: List[str] = ["/admin", "/login"]

    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    log_level: str = "INFO"
    max_batch_size: int = 500

    class Config:
        env_file = ".env"
        extra = "ignore"

settings = Settings()
