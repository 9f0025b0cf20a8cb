"""
애플리케이션 설정
"""

from pydantic_settings import BaseSettings
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv


"""env 로딩 우선순위
1) OS 환경변수 (배포 대시보드 Environment 등)
2) 프로젝트 루트의 .env (repo/.env)
"""

# .env 사전 로드 (OS 환경변수 우선, override=False)
_here = Path(__file__).resolve()
_repo_root_env = _here.parents[2] / ".env"  # repo/.env
if _repo_root_env.exists():
    load_dotenv(dotenv_path=str(_repo_root_env), override=False)


class Settings(BaseSettings):
    """애플리케이션 설정"""
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # API 키 (없어도 부팅 가능하도록 Optional)
    CLAUDE_API_KEY: Optional[str] = None
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"

    DATABASE_URL: str = "sqlite+aiosqlite:///./data/charhub.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # 공식 봇 계정 (자동 생성 캐릭터의 소유자)
    OFFICIAL_BOT_USER_ID: str = "00000000-0000-0000-0000-000000000001"

    # 배치 생성
    BATCH_GENERATION_ENABLED: bool = False
    BATCH_SIZE_PER_RUN: int = 24
    BATCH_RETRY_ATTEMPTS: int = 3
    BATCH_TIMEOUT_MINUTES: float = 5
    BATCH_BACKOFF_BASE_MS: int = 1000
    BATCH_DELAY_BETWEEN_MS: int = 5000
    BATCH_DAILY_HOUR: int = 3  # UTC

    # 이미지 선택(다양화)
    SELECTION_POOL_MULTIPLIER: int = 5
    RECENT_HISTORY_WINDOW: int = 50

    # 스토리지
    STORAGE_BACKEND: str = "local"
    UPLOAD_DIR: str = "./data/uploads"
    S3_ENDPOINT_URL: Optional[str] = None
    S3_ACCESS_KEY_ID: Optional[str] = None
    S3_SECRET_ACCESS_KEY: Optional[str] = None
    S3_BUCKET: Optional[str] = None
    S3_REGION: Optional[str] = None
    S3_PUBLIC_BASE_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'ignore'

settings = Settings()


# 환경별 설정 검증
def validate_settings():
    """설정 검증"""
    if settings.ENVIRONMENT == "production":
        if not settings.CLAUDE_API_KEY:
            raise ValueError("프로덕션 환경에서는 CLAUDE_API_KEY가 필요합니다.")
        if settings.BATCH_SIZE_PER_RUN < 1:
            raise ValueError("BATCH_SIZE_PER_RUN은 1 이상이어야 합니다.")

    return True


# 설정 검증 실행
validate_settings()
