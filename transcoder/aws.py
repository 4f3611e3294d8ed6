import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings


def _session():
    # None credentials let boto3 fall back to its default chain (env, profile, instance role)
    return boto3.session.Session(
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        region_name=settings.AWS_REGION,
    )


def get_s3_client():
    """
    SDK client for object upload/download/delete against the transcoder buckets.
    """
    return _session().client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,
        config=BotoConfig(
            s3={"addressing_style": "path"} if settings.S3_ENDPOINT_URL else {},
            signature_version="s3v4",
        ),
    )


def get_sqs_client():
    """
    Fresh SQS client. Every NotificationListener owns (and closes) its own.
    """
    return _session().client("sqs", endpoint_url=settings.SQS_ENDPOINT_URL)


def get_transcoder_client():
    return _session().client("elastictranscoder")


def error_code(exc: Exception) -> str | None:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def describe_aws_error(exc: Exception) -> str:
    """
    Human readable detail for a botocore failure.

    Service errors (the request reached AWS and was rejected) carry a code,
    message, HTTP status and request id. Client errors (network, credentials,
    parameter validation) only carry their own message.
    """
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        meta = exc.response.get("ResponseMetadata", {})
        parts = [
            f"AWS service error {err.get('Code', 'Unknown')}: {err.get('Message', str(exc))}",
            f"operation={exc.operation_name}",
        ]
        if meta.get("HTTPStatusCode"):
            parts.append(f"status={meta['HTTPStatusCode']}")
        if meta.get("RequestId"):
            parts.append(f"request_id={meta['RequestId']}")
        return ", ".join(parts)
    if isinstance(exc, BotoCoreError):
        return f"AWS client error {type(exc).__name__}: {exc}"
    return f"{type(exc).__name__}: {exc}"
