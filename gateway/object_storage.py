"""
对象存储中转（S3 兼容，Cloudflare R2）
大文件先流式上传到临时对象，再把预签名 GET 地址交给提供商拉取，完成后删除
boto3 只负责本地签名，实际上传 / 删除通过 httpx 完成
"""
import time
import random
import string
from dataclasses import dataclass
from typing import AsyncIterable, Optional, Union

from log import log
from config import (
    get_http_timeout,
    get_presign_expiry_seconds,
    get_r2_access_key_id,
    get_r2_bucket,
    get_r2_endpoint,
    get_r2_secret_access_key,
)
from .errors import InternalMisconfiguration
from .httpx_client import http_client

EXTENSION_BY_MIME = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/vnd.wave": "wav",
    "audio/mp4": "m4a",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
    "audio/opus": "opus",
}


def generate_object_key(content_type: str) -> str:
    """临时对象键：temp/{毫秒时间戳}-{8 位随机串}.{扩展名}"""
    timestamp = int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    mime = (content_type or "").split(";")[0].strip().lower()
    ext = EXTENSION_BY_MIME.get(mime, "bin")
    return f"temp/{timestamp}-{suffix}.{ext}"


@dataclass
class StagedObject:
    key: str
    url: str          # 预签名 GET 地址
    content_type: str
    size: int


class ObjectStorage:
    """S3 兼容对象存储"""

    def __init__(self, endpoint: str, bucket: str, access_key_id: str, secret_access_key: str,
                 expiry_seconds: int = 900):
        import boto3
        from botocore.config import Config

        self.bucket = bucket
        self.expiry_seconds = expiry_seconds
        self._s3 = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
            config=Config(signature_version="s3v4"),
        )

    def presign(self, operation: str, key: str, **params) -> str:
        return self._s3.generate_presigned_url(
            operation,
            Params={"Bucket": self.bucket, "Key": key, **params},
            ExpiresIn=self.expiry_seconds,
        )

    async def stage(self, body: Union[bytes, AsyncIterable[bytes]], content_type: str, size: int) -> StagedObject:
        """上传音频并返回带预签名 GET 地址的临时对象"""
        key = generate_object_key(content_type)
        put_url = self.presign("put_object", key, ContentType=content_type)
        headers = {"Content-Type": content_type, "Content-Length": str(size)}
        started = time.monotonic()
        async with http_client.get_client(timeout=await get_http_timeout()) as client:
            resp = await client.put(put_url, content=body, headers=headers)
        if resp.status_code >= 300:
            raise RuntimeError(f"Object upload failed with status {resp.status_code}")
        log.info(f"Staged object uploaded: key={key} size={size} elapsed={time.monotonic() - started:.2f}s")
        return StagedObject(key=key, url=self.presign("get_object", key), content_type=content_type, size=size)

    async def delete(self, key: str):
        """删除临时对象；失败只记录日志（桶生命周期规则兜底）"""
        try:
            delete_url = self.presign("delete_object", key)
            async with http_client.get_client(timeout=30.0) as client:
                resp = await client.delete(delete_url)
            if resp.status_code >= 300 and resp.status_code != 404:
                log.warning(f"Failed to delete staged object {key}: status={resp.status_code}")
            else:
                log.debug(f"Staged object deleted: {key}")
        except Exception as e:
            log.warning(f"Failed to delete staged object {key}: {e}")


# 全局实例
_object_storage: Optional[ObjectStorage] = None


async def get_object_storage() -> ObjectStorage:
    """获取全局对象存储实例，未配置时抛出 InternalMisconfiguration"""
    global _object_storage
    if _object_storage is None:
        endpoint = await get_r2_endpoint()
        bucket = await get_r2_bucket()
        access_key_id = await get_r2_access_key_id()
        secret_access_key = await get_r2_secret_access_key()
        if not all([endpoint, bucket, access_key_id, secret_access_key]):
            raise InternalMisconfiguration("Object storage is not configured for large uploads")
        _object_storage = ObjectStorage(
            endpoint=endpoint,
            bucket=bucket,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            expiry_seconds=await get_presign_expiry_seconds(),
        )
    return _object_storage
