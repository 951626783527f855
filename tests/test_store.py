import io
from datetime import datetime, timezone

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from botocore.stub import Stubber

from manifests import DiscoveryError, find_manifests
from store import (
    NoRetentionConfigured,
    ObjectNotFound,
    S3Store,
    StoreError,
    UpdateError,
    classify_error,
    make_s3_client,
)

BUCKET = "test-bucket"
KEY = "cluster/host/data/file.db"


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def stubbed(s3_client):
    with Stubber(s3_client) as stubber:
        yield S3Store(s3_client, BUCKET), stubber
        stubber.assert_no_pending_responses()


def client_error(code, status=400, operation="GetObjectRetention"):
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


@pytest.mark.parametrize("code, status, expected", [
    ("NoSuchObjectLockConfiguration", 404, NoRetentionConfigured),
    ("ObjectLockConfigurationNotFoundError", 404, NoRetentionConfigured),
    ("NoSuchKey", 404, ObjectNotFound),
    ("404", 404, ObjectNotFound),
    ("", 404, ObjectNotFound),
    ("AccessDenied", 403, StoreError),
])
def test_classify_error(code, status, expected):
    err = classify_error(client_error(code, status), KEY)
    assert type(err) is expected
    assert err.key == KEY


def test_store_requires_bucket(s3_client):
    with pytest.raises(ValueError):
        S3Store(s3_client, "")


def test_find_manifests_follows_continuation_tokens(stubbed):
    store, stubber = stubbed
    stubber.add_response("list_objects_v2", {
        "Contents": [
            {"Key": "cluster1/host1/backup-001/meta/manifest.json"},
            {"Key": "cluster1/host1/data/ks/table/file1.db"},
        ],
        "IsTruncated": True,
        "NextContinuationToken": "token-1",
    })
    stubber.add_response("list_objects_v2", {
        "Contents": [
            {"Key": "cluster1/host1/backup-001/meta/manifest.json"},
            {"Key": "cluster1/host2/backup-001/meta/manifest.json"},
        ],
        "IsTruncated": False,
    })

    assert find_manifests(store, "cluster1") == [
        "cluster1/host1/backup-001/meta/manifest.json",
        "cluster1/host2/backup-001/meta/manifest.json",
    ]


def test_find_manifests_page_failure_aborts(stubbed):
    store, stubber = stubbed
    stubber.add_response("list_objects_v2", {
        "Contents": [{"Key": "cluster1/host1/backup-001/meta/manifest.json"}],
        "IsTruncated": True,
        "NextContinuationToken": "token-1",
    })
    stubber.add_client_error("list_objects_v2", service_error_code="AccessDenied", http_status_code=403)

    with pytest.raises(DiscoveryError):
        find_manifests(store, "cluster1")


def test_get_reads_body(stubbed):
    store, stubber = stubbed
    data = b'{"objects": []}'
    stubber.add_response("get_object", {"Body": StreamingBody(io.BytesIO(data), len(data))})
    assert store.get("c/h/b/meta/manifest.json") == data


def test_get_missing_object(stubbed):
    store, stubber = stubbed
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
    with pytest.raises(ObjectNotFound):
        store.get("c/h/b/meta/manifest.json")


def test_get_retention_returns_expiry(stubbed):
    store, stubber = stubbed
    until = datetime(2030, 1, 1, tzinfo=timezone.utc)
    stubber.add_response(
        "get_object_retention",
        {"Retention": {"Mode": "GOVERNANCE", "RetainUntilDate": until}},
        {"Bucket": BUCKET, "Key": KEY},
    )
    retention = store.get_retention(KEY)
    assert retention.mode == "GOVERNANCE"
    assert retention.retain_until == until


def test_get_retention_without_date_is_none(stubbed):
    store, stubber = stubbed
    stubber.add_response("get_object_retention", {}, {"Bucket": BUCKET, "Key": KEY})
    assert store.get_retention(KEY) is None


@pytest.mark.parametrize("code, status, expected", [
    ("NoSuchObjectLockConfiguration", 404, NoRetentionConfigured),
    ("NoSuchKey", 404, ObjectNotFound),
    ("AccessDenied", 403, StoreError),
])
def test_get_retention_errors_are_typed(stubbed, code, status, expected):
    store, stubber = stubbed
    stubber.add_client_error("get_object_retention", service_error_code=code, http_status_code=status)
    with pytest.raises(expected) as excinfo:
        store.get_retention(KEY)
    assert excinfo.value.code == code


def test_put_retention_sends_governance_window(stubbed):
    store, stubber = stubbed
    until = datetime(2030, 1, 1, tzinfo=timezone.utc)
    stubber.add_response(
        "put_object_retention",
        {"ResponseMetadata": {"RequestId": "req-1", "HTTPStatusCode": 200}},
        {"Bucket": BUCKET, "Key": KEY, "Retention": {"Mode": "GOVERNANCE", "RetainUntilDate": until}},
    )
    metadata = store.put_retention(KEY, until)
    assert metadata["RequestId"] == "req-1"


def test_put_retention_bypass_governance(stubbed):
    store, stubber = stubbed
    until = datetime(2030, 1, 1, tzinfo=timezone.utc)
    stubber.add_response(
        "put_object_retention",
        {},
        {
            "Bucket": BUCKET,
            "Key": KEY,
            "Retention": {"Mode": "COMPLIANCE", "RetainUntilDate": until},
            "BypassGovernanceRetention": True,
        },
    )
    store.put_retention(KEY, until, mode="COMPLIANCE", bypass_governance=True)


@pytest.mark.parametrize("code, status", [
    ("AccessDenied", 403),
    ("InvalidRequest", 400),
    ("NoSuchKey", 404),
])
def test_put_retention_failures_are_update_errors(stubbed, code, status):
    store, stubber = stubbed
    stubber.add_client_error("put_object_retention", service_error_code=code, http_status_code=status)
    with pytest.raises(UpdateError) as excinfo:
        store.put_retention(KEY, datetime(2030, 1, 1, tzinfo=timezone.utc))
    assert excinfo.value.code == code


def test_put_retention_rejects_unknown_mode(stubbed):
    store, _ = stubbed
    with pytest.raises(ValueError):
        store.put_retention(KEY, datetime(2030, 1, 1, tzinfo=timezone.utc), mode="LEGAL_HOLD")


def test_make_s3_client_retries(monkeypatch):
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    client = make_s3_client(region="us-east-1", max_attempts=3)
    assert client.meta.region_name == "us-east-1"
    assert client.meta.config.retries["max_attempts"] == 3
    assert client.meta.config.retries["mode"] == "standard"
