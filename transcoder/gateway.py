import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from .aws import describe_aws_error, error_code, get_s3_client
from .errors import DeleteFailure, DownloadFailure, UploadFailure

logger = logging.getLogger(__name__)

_AWS_ERRORS = (ClientError, BotoCoreError, Boto3Error)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class RetrievedObject:
    """A remote object materialized as a local temporary file."""

    path: Path
    filename: str
    content_type: str | None = None

    @property
    def size(self) -> int:
        return self.path.stat().st_size


def _temp_suffix(filename: str) -> str:
    ext = Path(filename).suffix
    return ext if ext else ".tmp"


class ObjectStoreGateway:
    """
    Upload, download and delete single objects in one bucket.

    Stateless per call; safe to share between jobs as long as keys differ.
    Every SDK failure is re-raised as an ObjectStoreFailure subclass. Nothing
    is retried here.
    """

    def __init__(self, bucket: str, client=None):
        self.bucket = bucket
        self._client = client if client is not None else get_s3_client()

    def put(self, key: str, local_file: str | Path) -> None:
        try:
            self._client.upload_file(str(local_file), self.bucket, key)
        except _AWS_ERRORS as exc:
            raise UploadFailure(self.bucket, key, describe_aws_error(exc), error_code(exc)) from exc
        logger.debug("Uploaded %s to s3://%s/%s", local_file, self.bucket, key)

    def get(self, key: str, destination_name: str) -> RetrievedObject:
        """
        Download `key` into a temp file whose logical name is `destination_name`.

        The local file keeps the display name's extension so content sniffing
        downstream still works; the content type stored with the object is
        carried over as-is.
        """
        tmp = tempfile.NamedTemporaryFile(
            prefix="transcode-", suffix=_temp_suffix(destination_name), delete=False
        )
        tmp_path = Path(tmp.name)
        try:
            with tmp:
                resp = self._client.get_object(Bucket=self.bucket, Key=key)
                body = resp["Body"]
                for chunk in body.iter_chunks(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    tmp.write(chunk)
        except _AWS_ERRORS as exc:
            tmp_path.unlink(missing_ok=True)
            raise DownloadFailure(self.bucket, key, describe_aws_error(exc), error_code(exc)) from exc
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise DownloadFailure(self.bucket, key, f"{type(exc).__name__}: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug("Downloaded s3://%s/%s to %s", self.bucket, key, tmp_path)
        return RetrievedObject(
            path=tmp_path,
            filename=destination_name,
            content_type=resp.get("ContentType"),
        )

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except _AWS_ERRORS as exc:
            raise DeleteFailure(self.bucket, key, describe_aws_error(exc), error_code(exc)) from exc
        logger.debug("Deleted s3://%s/%s", self.bucket, key)
