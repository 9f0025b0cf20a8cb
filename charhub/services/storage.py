import os
import uuid
from typing import Optional

from charhub.core.config import settings


class Storage:
    def save_bytes(self, data: bytes, *, content_type: Optional[str] = None, key_hint: Optional[str] = None) -> str:
        raise NotImplementedError


def _ext_from_hint(key_hint: Optional[str], default: str = "") -> str:
    if key_hint and "." in key_hint:
        return "." + key_hint.split(".")[-1].lower()
    return default


class LocalStorage(Storage):
    def __init__(self, base_dir: str, public_base: str = "/static") -> None:
        self.base_dir = base_dir
        self.public_base = public_base.rstrip("/")
        os.makedirs(self.base_dir, exist_ok=True)

    def save_bytes(self, data: bytes, *, content_type: Optional[str] = None, key_hint: Optional[str] = None) -> str:
        name = f"{uuid.uuid4()}{_ext_from_hint(key_hint, '.png')}"
        path = os.path.join(self.base_dir, name)
        with open(path, "wb") as f:
            f.write(data)
        return f"{self.public_base}/{name}"


class S3Storage(Storage):
    """S3 호환 스토리지 (R2 포함). boto3 는 s3 extra 로 설치"""

    def __init__(self, *, endpoint_url: str, access_key: str, secret_key: str, bucket: str,
                 region: Optional[str] = None, public_base_url: Optional[str] = None,
                 key_prefix: str = "curated") -> None:
        import boto3
        from botocore.config import Config

        # R2는 프리사인에 SigV4 필요
        cfg = Config(signature_version="s3v4", s3={"addressing_style": "path"})
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=cfg,
        )
        self.bucket = bucket
        self.key_prefix = key_prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def save_bytes(self, data: bytes, *, content_type: Optional[str] = None, key_hint: Optional[str] = None) -> str:
        key = f"{self.key_prefix}/{uuid.uuid4()}{_ext_from_hint(key_hint)}"
        extra_args = {}
        if content_type:
            extra_args["ContentType"] = content_type
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra_args)
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        # 기본 S3 URL (path-style: endpoint/bucket/key)
        endpoint = self.client.meta.endpoint_url.rstrip("/")
        return f"{endpoint}/{self.bucket}/{key}"


def get_storage() -> Storage:
    backend = (settings.STORAGE_BACKEND or "local").lower()
    if backend == "s3":
        if not (settings.S3_ENDPOINT_URL and settings.S3_ACCESS_KEY_ID and settings.S3_SECRET_ACCESS_KEY and settings.S3_BUCKET):
            raise RuntimeError("S3/R2 storage is not fully configured")
        return S3Storage(
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key=settings.S3_ACCESS_KEY_ID,
            secret_key=settings.S3_SECRET_ACCESS_KEY,
            bucket=settings.S3_BUCKET,
            region=settings.S3_REGION,
            public_base_url=settings.S3_PUBLIC_BASE_URL,
        )
    return LocalStorage(base_dir=settings.UPLOAD_DIR, public_base="/static")
