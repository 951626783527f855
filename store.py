import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger("refresher")

RETENTION_MODES = ("GOVERNANCE", "COMPLIANCE")

NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
NO_RETENTION_CODES = {"NoSuchObjectLockConfiguration", "ObjectLockConfigurationNotFoundError"}


class StoreError(Exception):
    def __init__(self, message, code=None, key=None):
        super().__init__(message)
        self.code = code
        self.key = key


class ObjectNotFound(StoreError):
    pass


class NoRetentionConfigured(StoreError):
    pass


class UpdateError(StoreError):
    pass


class Retention:
    """Object lock state as reported by S3."""

    def __init__(self, mode, retain_until):
        self.mode = mode
        self.retain_until = retain_until

    def __repr__(self):
        return f"Retention(mode={self.mode!r}, retain_until={self.retain_until!r})"


def classify_error(exc, key=None):
    """Turns a botocore failure into one of the typed store errors."""
    if isinstance(exc, ClientError):
        err = exc.response.get('Error', {})
        code = str(err.get('Code', ''))
        status = exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        message = f"{code}: {err.get('Message', exc)}" if code else str(exc)
        if code in NO_RETENTION_CODES:
            return NoRetentionConfigured(message, code=code, key=key)
        if code in NOT_FOUND_CODES or (status == 404 and not code):
            return ObjectNotFound(message, code=code, key=key)
        return StoreError(message, code=code or None, key=key)
    return StoreError(str(exc), key=key)


def make_s3_client(region=None, profile=None, max_attempts=5):
    """Builds an S3 client with bounded retries on transient errors."""
    session = boto3.Session(profile_name=profile, region_name=region)
    retry_config = Config(retries={'max_attempts': max_attempts, 'mode': 'standard'})
    return session.client('s3', config=retry_config)


class S3Store:
    """The four bucket operations the refresher needs, with typed errors."""

    def __init__(self, client, bucket):
        if not bucket:
            raise ValueError("bucket name is required")
        self.client = client
        self.bucket = bucket

    def list_keys(self, prefix):
        paginator = self.client.get_paginator('list_objects_v2')
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    yield obj['Key']
        except (BotoCoreError, ClientError) as e:
            raise classify_error(e, prefix) from e

    def get(self, key):
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            body = response['Body']
            try:
                return body.read()
            finally:
                body.close()
        except (BotoCoreError, ClientError) as e:
            raise classify_error(e, key) from e

    def get_retention(self, key):
        """Returns the current Retention, or None if S3 reports no expiry."""
        try:
            response = self.client.get_object_retention(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise classify_error(e, key) from e

        retention = response.get('Retention') or {}
        if not retention.get('RetainUntilDate'):
            return None
        return Retention(retention.get('Mode'), retention['RetainUntilDate'])

    def put_retention(self, key, until, mode="GOVERNANCE", bypass_governance=False):
        """Applies a retention window. Returns the AWS response metadata."""
        if mode not in RETENTION_MODES:
            raise ValueError(f"unknown retention mode: {mode}")

        params = {
            'Bucket': self.bucket,
            'Key': key,
            'Retention': {'Mode': mode, 'RetainUntilDate': until},
        }
        if bypass_governance:
            params['BypassGovernanceRetention'] = True

        try:
            response = self.client.put_object_retention(**params)
        except (BotoCoreError, ClientError) as e:
            err = classify_error(e, key)
            raise UpdateError(str(err), code=err.code, key=key) from e
        return response.get('ResponseMetadata', {})
