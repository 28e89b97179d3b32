# artifacts.py
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import PermanentDeliveryError, TransientDeliveryError


def parse_content_ref(content_ref, default_bucket=None):
    """`s3://bucket/key` or a bare key in the default bucket."""
    if content_ref.startswith("s3://"):
        bucket, _, key = content_ref[len("s3://"):].partition("/")
    else:
        bucket, key = default_bucket, content_ref.lstrip("/")
    if not bucket or not key:
        raise PermanentDeliveryError(f"unresolvable content reference: {content_ref}")
    return bucket, key


class S3ArtifactResolver:
    """Presigned GET URLs for voice-note objects."""

    def __init__(self, default_bucket=None, region="us-east-1", endpoint_url=None, client=None):
        self.default_bucket = default_bucket
        if client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4"),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client

    def resolve(self, content_ref, ttl_seconds):
        bucket, key = parse_content_ref(content_ref, self.default_bucket)
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=int(ttl_seconds),
            )
        except (BotoCoreError, ClientError) as e:
            raise TransientDeliveryError(f"could not presign {content_ref}: {e}") from e
