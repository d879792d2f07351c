"""
MinIO Storage Service.

Provides the S3-compatible object operations the Reference Store needs:
bucket bootstrap, object put/get/stat, prefix listing with
modification times, and object tagging for retention-policy cleanup.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from io import BytesIO
from typing import BinaryIO, Dict, List, Optional, Tuple

from minio import Minio
from minio.commonconfig import Tags
from minio.error import S3Error

from playbook_engine.config import settings
from playbook_engine.core.shared.config_loader import config_loader

logger = logging.getLogger("playbook_engine.minio")


class MinIOService:
    """
    MinIO storage service implementation.

    Configuration Sources (priority order):
        1. config.yml (if present) via config_loader.get_minio_config()
        2. Environment variables via settings
    """

    def __init__(self):
        self._client: Optional[Minio] = None
        self._load_config()

    def _load_config(self):
        minio_config = config_loader.get_minio_config()

        if minio_config:
            logger.info("Loading MinIO configuration from config.yml")
            self.enabled = minio_config.enabled
            self.endpoint = minio_config.endpoint
            self.access_key = minio_config.access_key
            self.secret_key = minio_config.secret_key
            self.secure = minio_config.secure
            self.bucket_playbooks = minio_config.bucket_playbooks
        else:
            logger.info("Loading MinIO configuration from environment variables")
            self.enabled = True
            self.endpoint = settings.minio_endpoint
            self.access_key = settings.minio_access_key
            self.secret_key = settings.minio_secret_key
            self.secure = settings.minio_secure
            self.bucket_playbooks = settings.minio_bucket_playbooks

    @property
    def client(self) -> Minio:
        """Get or create MinIO client (lazy initialization)."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
            logger.info(f"MinIO client initialized (endpoint={self.endpoint}, secure={self.secure})")
        return self._client

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    def check_health(self) -> Tuple[bool, Optional[List[str]], Optional[str]]:
        """
        Check MinIO connection health.

        Returns:
            Tuple of (connected, buckets list, error message)
        """
        try:
            buckets = self.client.list_buckets()
            return True, [b.name for b in buckets], None
        except Exception as e:
            logger.error(f"MinIO health check failed: {e}")
            return False, None, str(e)

    # =========================================================================
    # BUCKET OPERATIONS
    # =========================================================================

    def ensure_bucket(self, bucket: str) -> bool:
        """
        Create bucket if it doesn't exist.

        Returns:
            True if bucket was created, False if it already existed
        """
        try:
            if not self.client.bucket_exists(bucket):
                self.client.make_bucket(bucket)
                logger.info(f"Created bucket: {bucket}")
                return True
            logger.debug(f"Bucket already exists: {bucket}")
            return False
        except S3Error as e:
            logger.error(f"Failed to create bucket {bucket}: {e}")
            raise

    # =========================================================================
    # OBJECT OPERATIONS
    # =========================================================================

    def object_exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.stat_object(bucket, key)
            return True
        except S3Error as e:
            if e.code == "NoSuchKey":
                return False
            raise

    def get_object_info(self, bucket: str, key: str) -> Optional[Dict]:
        """
        Get object metadata without downloading content.

        Returns:
            Object info dict or None if not found
        """
        try:
            stat = self.client.stat_object(bucket, key)
            return {
                "bucket": bucket,
                "key": key,
                "size": stat.size,
                "content_type": stat.content_type,
                "etag": stat.etag.strip('"'),
                "last_modified": stat.last_modified,
                "metadata": dict(stat.metadata) if stat.metadata else {},
            }
        except S3Error as e:
            if e.code == "NoSuchKey":
                return None
            raise

    def put_object(
        self,
        bucket: str,
        key: str,
        data: BinaryIO,
        length: int,
        content_type: str = "application/json",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Upload an object.

        Returns:
            Object ETag
        """
        result = self.client.put_object(
            bucket_name=bucket,
            object_name=key,
            data=data,
            length=length,
            content_type=content_type,
            metadata=metadata,
        )
        logger.info(f"Uploaded object {bucket}/{key} ({length} bytes)")
        return result.etag

    def get_object(self, bucket: str, key: str) -> BytesIO:
        """Download an object into memory."""
        response = None
        try:
            response = self.client.get_object(bucket, key)
            return BytesIO(response.read())
        finally:
            if response:
                response.close()
                response.release_conn()

    def list_objects(self, bucket: str, prefix: str = "", recursive: bool = True) -> List[Dict]:
        """
        List objects under a prefix.

        Returns:
            List of object info dicts (key, size, etag, last_modified)
        """
        objects = []
        for obj in self.client.list_objects(bucket, prefix=prefix, recursive=recursive):
            if obj.is_dir:
                continue
            objects.append({
                "bucket": bucket,
                "key": obj.object_name,
                "size": obj.size or 0,
                "etag": obj.etag.strip('"') if obj.etag else "",
                "last_modified": obj.last_modified or datetime.now(timezone.utc),
            })
        return objects

    def set_object_tags(self, bucket: str, key: str, tags: Dict[str, str]) -> None:
        """Replace the tag set of an object."""
        tag_set = Tags.new_object_tags()
        for name, value in tags.items():
            tag_set[name] = value
        self.client.set_object_tags(bucket, key, tag_set)
        logger.info(f"Tagged object {bucket}/{key}: {tags}")


# =============================================================================
# SINGLETON SERVICE
# =============================================================================


@lru_cache()
def get_minio_service() -> Optional[MinIOService]:
    """
    Get singleton MinIO service instance if object storage is enabled.

    Returns:
        MinIOService if object storage is enabled, else None
    """
    minio_config = config_loader.get_minio_config()
    if minio_config and not minio_config.enabled:
        return None
    return MinIOService()
