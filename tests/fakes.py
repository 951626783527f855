"""In-memory stand-in for S3Store used by the driver tests."""
import json

from store import NoRetentionConfigured, ObjectNotFound, Retention, StoreError, UpdateError


class FakeStore:
    def __init__(self, bucket="test-bucket"):
        self.bucket = bucket
        self.objects = {}
        self.retention = {}
        self.query_errors = {}
        self.put_errors = {}
        self.list_error = None
        self.put_calls = []
        self.bypassed = []

    def add_object(self, key, body=b"", retain_until=None):
        self.objects[key] = body
        if retain_until is not None:
            self.retention[key] = retain_until

    def add_manifest(self, key, paths, per_table=False):
        records = [{"path": p} for p in paths]
        if per_table:
            doc = [{"keyspace": "ks", "columnfamily": "table", "objects": records}]
        else:
            doc = {"objects": records}
        self.add_object(key, json.dumps(doc).encode())

    def list_keys(self, prefix):
        if self.list_error is not None:
            raise self.list_error
        for key in sorted(self.objects):
            if key.startswith(prefix):
                yield key

    def get(self, key):
        if key not in self.objects:
            raise ObjectNotFound("NoSuchKey", code="NoSuchKey", key=key)
        return self.objects[key]

    def get_retention(self, key):
        if key in self.query_errors:
            raise self.query_errors[key]
        if key not in self.objects:
            raise ObjectNotFound("NoSuchKey", code="NoSuchKey", key=key)
        if key not in self.retention:
            raise NoRetentionConfigured("NoSuchObjectLockConfiguration",
                                        code="NoSuchObjectLockConfiguration", key=key)
        until = self.retention[key]
        return Retention("GOVERNANCE", until) if until else None

    def put_retention(self, key, until, mode="GOVERNANCE", bypass_governance=False):
        self.put_calls.append((key, until, mode))
        if bypass_governance:
            self.bypassed.append(key)
        if key in self.put_errors:
            raise self.put_errors[key]
        self.retention[key] = until
        return {"RequestId": "req-1", "HostId": "host-1"}


def access_denied(key):
    return StoreError("AccessDenied: Access Denied", code="AccessDenied", key=key)


def lock_not_enabled(key):
    return UpdateError("InvalidRequest: Bucket is missing Object Lock Configuration",
                       code="InvalidRequest", key=key)
