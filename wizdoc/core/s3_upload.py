"""S3-compatible staging for captured audio.

When an ``s3`` section is configured, the pipeline uploads each artifact
before transcription and sends the object key instead of inline audio.
Objects are laid out as ``<prefix>/<user_id>/<run_id>/<run_id>.<format>``.
"""

from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

# Errors boto3 raises for network, credential and service failures
S3_ERRORS = (BotoCoreError, ClientError)

REQUIRED_FIELDS = ("bucket", "endpoint_url", "access_key", "secret_key")


def _key_segments(value: Optional[str]) -> list:
    if not value:
        return []
    return [part for part in value.replace("\\", "/").split("/") if part]


def build_object_key(
    filename: str,
    run_id: str,
    user_id: Optional[str] = None,
    prefix: str = "",
) -> str:
    """Return the object key for *filename*, scoped by user and run."""
    segments = _key_segments(prefix) + _key_segments(user_id) + _key_segments(run_id)
    segments.append(PurePath(filename.replace("\\", "/")).name)
    return "/".join(segments)


@dataclass
class S3Config:
    """Connection settings from the ``s3`` section of ``.wizdoc.yml``."""

    bucket: str
    endpoint_url: str
    access_key: str
    secret_key: str
    region: Optional[str] = None
    prefix: str = ""
    verify_ssl: bool = True
    path_style: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "S3Config":
        """Validate *data*; raises ``ValueError`` naming any missing field."""
        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise ValueError(f"Missing required S3 configuration fields: {', '.join(missing)}")

        settings = {name: str(data[name]) for name in REQUIRED_FIELDS}
        return cls(
            region=str(data["region"]) if data.get("region") else None,
            prefix=str(data.get("prefix", "")),
            verify_ssl=bool(data.get("verify_ssl", True)),
            path_style=bool(data.get("path_style", True)),
            **settings,
        )

    def client_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``boto3.client("s3", ...)``."""
        return {
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.access_key,
            "aws_secret_access_key": self.secret_key,
            "region_name": self.region,
            "verify": self.verify_ssl,
            "config": Config(s3={"addressing_style": "path" if self.path_style else "virtual"}),
        }


class S3Uploader:
    """Stages run audio in an S3-compatible bucket."""

    def __init__(self, config: S3Config) -> None:
        self._config = config
        self._client = boto3.client("s3", **config.client_options())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "S3Uploader":
        return cls(S3Config.from_dict(data))

    @property
    def bucket(self) -> str:
        return self._config.bucket

    def upload_bytes(
        self,
        data: bytes,
        filename: str,
        run_id: str,
        user_id: Optional[str] = None,
    ) -> str:
        """Upload *data* under a run-scoped key and return the key.

        Blocking; the pipeline calls it from a worker thread.
        """
        key = build_object_key(filename, run_id, user_id=user_id, prefix=self._config.prefix)
        self._client.put_object(Bucket=self._config.bucket, Key=key, Body=data)
        return key

    def check_bucket(self) -> bool:
        """Return whether ``head_bucket`` succeeds for the configured bucket."""
        try:
            self._client.head_bucket(Bucket=self._config.bucket)
        except S3_ERRORS:
            return False
        return True
