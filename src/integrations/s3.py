"""S3 transfers for simulation artifacts and published reports.

Public API:
    get_s3_client: boto3 S3 client built from settings
    parse_s3_url: Split an s3:// URL into bucket and key prefix
    S3ArtifactTransfer: Fetch the input artifact, mirror the report back
"""

import logging
from pathlib import Path
from typing import Any, Iterator

import boto3

from src.integrations.workspace import LocalWorkspace
from src.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

# delete_objects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000


class S3MirrorError(Exception):
    """Some stale objects could not be deleted from the destination."""

    def __init__(self, bucket: str, errors: list[dict[str, Any]]):
        self.bucket = bucket
        self.errors = errors
        keys = ", ".join(e.get("Key", "?") for e in errors[:5])
        super().__init__(f"Failed to delete {len(errors)} object(s) from s3://{bucket}: {keys}")


def get_s3_client(settings: Settings | None = None) -> Any:
    """Create and return an S3 client with configured settings.

    Explicit keys are passed only when configured; otherwise boto3's
    default credential chain applies.
    """
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "region_name": settings.AWS_REGION,
        "endpoint_url": settings.AWS_ENDPOINT_URL,
    }
    if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
        kwargs["aws_access_key_id"] = settings.AWS_ACCESS_KEY_ID.get_secret_value()
        kwargs["aws_secret_access_key"] = settings.AWS_SECRET_ACCESS_KEY.get_secret_value()
    return boto3.client("s3", **kwargs)


def parse_s3_url(url: str) -> tuple[str, str]:
    """Split ``s3://bucket/some/prefix`` into ``("bucket", "some/prefix")``.

    Raises:
        ValueError: If the URL is not an s3:// URL with a bucket
    """
    if not url.startswith("s3://"):
        raise ValueError(f"Not an s3:// URL: '{url}'")
    bucket, _, prefix = url[len("s3://"):].partition("/")
    if not bucket:
        raise ValueError(f"S3 URL has no bucket: '{url}'")
    return bucket, prefix.strip("/")


def join_key(prefix: str, name: str) -> str:
    return f"{prefix}/{name}" if prefix else name


class S3ArtifactTransfer:
    """Moves artifacts between S3 and the local working areas.

    Args:
        workspace: Working areas downloads are placed in
        client: boto3 S3 client (built from settings if None)
    """

    def __init__(self, workspace: LocalWorkspace, client: Any = None) -> None:
        self.workspace = workspace
        self.client = client if client is not None else get_s3_client()

    def fetch(self, org_name: str, source_location: str, dest_file_name: str) -> Path:
        """Download ``<source_location>/<dest_file_name>`` into the org's working area.

        An existing local copy is overwritten.

        Returns:
            Local path of the downloaded file
        """
        bucket, prefix = parse_s3_url(source_location)
        key = join_key(prefix, dest_file_name)
        dest = self.workspace.ensure(org_name) / dest_file_name

        logger.info("Downloading s3://%s/%s to %s", bucket, key, dest, extra={"org_name": org_name})
        self.client.download_file(bucket, key, str(dest))
        return dest

    def publish(self, working_subpath: Path, dest_location: str) -> None:
        """Make ``dest_location`` an exact mirror of ``working_subpath``.

        Every local file is uploaded; every object under the destination
        prefix without a local counterpart is deleted.

        Raises:
            FileNotFoundError: If working_subpath is not a directory
            S3MirrorError: If stale objects could not be deleted
        """
        if not working_subpath.is_dir():
            raise FileNotFoundError(f"Nothing to publish, directory not found: {working_subpath}")

        bucket, prefix = parse_s3_url(dest_location)
        local = {
            join_key(prefix, path.relative_to(working_subpath).as_posix()): path
            for path in sorted(working_subpath.rglob("*"))
            if path.is_file()
        }
        remote = set(self._list_keys(bucket, prefix))

        for key, path in local.items():
            self.client.upload_file(str(path), bucket, key)

        stale = sorted(remote - local.keys())
        for start in range(0, len(stale), DELETE_BATCH_SIZE):
            batch = stale[start:start + DELETE_BATCH_SIZE]
            response = self.client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
            errors = response.get("Errors") or []
            if errors:
                raise S3MirrorError(bucket, errors)

        logger.info(
            "Published %s to s3://%s/%s (%d uploaded, %d deleted)",
            working_subpath,
            bucket,
            prefix,
            len(local),
            len(stale),
        )

    def _list_keys(self, bucket: str, prefix: str) -> Iterator[str]:
        # Trailing slash keeps "extracted" from matching "extracted-old"
        list_prefix = f"{prefix}/" if prefix else ""
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=list_prefix):
            for obj in page.get("Contents", []):
                yield obj["Key"]
