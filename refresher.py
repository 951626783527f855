#!/usr/bin/env python3
"""
Medusa retention refresher.

Walks every Medusa backup manifest of a Cassandra cluster stored in an
object-locked S3 bucket and extends the retention of any referenced data
file whose lock expires before the configured target.
"""
import os
import sys
import json
import socket
import logging
import argparse
import threading
import configparser
from datetime import datetime, timedelta, timezone
from concurrent.futures import ThreadPoolExecutor

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from manifests import DecodeError, DiscoveryError, PathError, find_manifests, parse_manifest, resolve_hostname_path, resolve_object_key
from store import RETENTION_MODES, NoRetentionConfigured, ObjectNotFound, S3Store, StoreError, UpdateError, make_s3_client

# System Metadata
VERSION = "1.0"
SYSTEM_NAME = "Medusa Retention Refresher"
DEFAULT_CONFIG_FILE = "refresher.cfg"
LEDGER_FILE = "retention.log"

logger = logging.getLogger("refresher")

# Per-object outcomes
UPDATED = "updated"
WOULD_UPDATE = "would_update"
SUFFICIENT = "sufficient"
SKIPPED = "skipped"
FAILED = "failed"


class RetentionTarget:
    """
    The policy for one run. Objects locked until before `required` get a
    new window ending at `until`. The single-value policy has both equal.
    """

    def __init__(self, required, until):
        if until < required:
            raise ValueError("retention target ends before its threshold")
        self.required = required
        self.until = until

    def __repr__(self):
        return f"RetentionTarget(required={format_ts(self.required)}, until={format_ts(self.until)})"


def format_ts(ts):
    return ts.isoformat(timespec='seconds') if ts else "never"


def retention_target(now, retention_days=None, min_days=None, max_days=None):
    """Reduces either policy shape to a RetentionTarget."""
    if retention_days is not None:
        if min_days is not None or max_days is not None:
            raise ValueError("use either a single retention or a min/max pair, not both")
        if retention_days <= 0:
            raise ValueError("retention days must be positive")
        until = now + timedelta(days=retention_days)
        return RetentionTarget(until, until)

    if min_days is None or max_days is None:
        raise ValueError("retention days (or both min and max retention days) are required")
    if min_days <= 0 or max_days <= 0:
        raise ValueError("retention days must be positive")
    if max_days < min_days:
        raise ValueError("max retention must not be shorter than min retention")
    return RetentionTarget(now + timedelta(days=min_days), now + timedelta(days=max_days))


def needs_update(current, required):
    """True unless the object is already locked until at least `required`."""
    if current is None:
        return True
    return current < required


def check_retention(store, key, required):
    """
    Returns (needs_update, current_expiry). An object with no lock
    configuration, or not found, needs a window. Other failures propagate.
    """
    try:
        retention = store.get_retention(key)
    except (NoRetentionConfigured, ObjectNotFound) as e:
        logger.debug("  %s: %s, treating as unprotected", key, e.code)
        return True, None

    current = retention.retain_until if retention else None
    return needs_update(current, required), current


class AuditLedger:
    """
    One NDJSON line per applied retention window, written under a lock so
    worker threads never interleave records. Each line is flushed as written.
    """

    def __init__(self, log_dir, bucket, account_id="REDACTED", region="REDACTED"):
        self.log_file = os.path.join(log_dir, LEDGER_FILE)
        self.log_dir = log_dir
        self.bucket = bucket
        self.account_id = account_id
        self.region = region
        self._lock = threading.Lock()

    def record(self, action, key, mode, previous, until, response_metadata):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.upper(),
            "bucket": self.bucket,
            "key": key,
            "mode": mode,
            "previous_retain_until": previous.isoformat() if previous else None,
            "retain_until": until.isoformat(),
            "system": SYSTEM_NAME,
            "version": VERSION,
            "local_host": socket.gethostname(),
            "aws_account_id": self.account_id,
            "aws_region": self.region,
            "request_id": response_metadata.get('RequestId', 'N/A'),
            "aws_host_id": response_metadata.get('HostId', 'N/A'),
        }

        try:
            with self._lock:
                os.makedirs(self.log_dir, exist_ok=True)
                with open(self.log_file, "a") as f:
                    f.write(json.dumps(entry) + "\n")
                    f.flush()
        except OSError as e:
            # A ledger failure must not abort the remaining updates
            logger.warning("  [!] LEDGER ERROR: Could not write to %s (%s)", self.log_file, e)


def refresh_object(store, key, target, mode="GOVERNANCE", dry_run=False, bypass_governance=False, ledger=None):
    """Checks one object and extends its retention if needed. Returns the outcome."""
    try:
        update, current = check_retention(store, key, target.required)
    except StoreError as e:
        logger.warning("  [SKIP] %s: retention check failed (%s)", key, e)
        return SKIPPED

    if not update:
        logger.debug("  [OK] %s locked until %s", key, format_ts(current))
        return SUFFICIENT

    if dry_run:
        logger.info("  [DRY RUN] Would update retention for %s (until %s)", key, format_ts(target.until))
        return WOULD_UPDATE

    try:
        metadata = store.put_retention(key, target.until, mode=mode, bypass_governance=bypass_governance)
    except UpdateError as e:
        logger.error("  [ERROR] Updating retention for %s failed: %s", key, e)
        return FAILED

    logger.info("  [UPDATED] %s (%s -> %s)", key, format_ts(current), format_ts(target.until))
    if ledger is not None:
        ledger.record("RETENTION_UPDATE", key, mode, current, target.until, metadata)
    return UPDATED


def new_stats():
    return {
        "manifests": 0,
        "manifests_failed": 0,
        "objects": 0,
        UPDATED: 0,
        WOULD_UPDATE: 0,
        SUFFICIENT: 0,
        SKIPPED: 0,
        FAILED: 0,
    }


def process_manifest(store, manifest_key, target, stats, mode="GOVERNANCE", dry_run=False,
                     bypass_governance=False, ledger=None, executor=None):
    """Refreshes every object referenced by one manifest. Failures stay local."""
    logger.info("Processing manifest: %s", manifest_key)

    try:
        manifest = parse_manifest(store.get(manifest_key), key=manifest_key)
        hostname_path = resolve_hostname_path(manifest_key)
    except (StoreError, DecodeError, PathError) as e:
        logger.error("[ERROR] Skipping manifest %s: %s", manifest_key, e)
        stats["manifests_failed"] += 1
        return

    keys = [resolve_object_key(hostname_path, path) for path in manifest.objects]

    def refresh(key):
        return refresh_object(store, key, target, mode=mode, dry_run=dry_run,
                              bypass_governance=bypass_governance, ledger=ledger)

    # Outcomes are tallied here, on the calling thread
    mapper = executor.map if executor is not None else map
    for outcome in mapper(refresh, keys):
        stats["objects"] += 1
        stats[outcome] += 1


def reconcile(store, cluster, target, mode="GOVERNANCE", dry_run=False, bypass_governance=False,
              workers=1, ledger=None, progress=False):
    """
    One full pass: discover manifests, then check and extend every object
    they reference. Only a failed discovery is fatal (DiscoveryError).
    """
    manifest_keys = find_manifests(store, cluster)
    logger.info("Found %d manifests", len(manifest_keys))

    stats = new_stats()
    stats["manifests"] = len(manifest_keys)

    executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
    try:
        for manifest_key in tqdm(manifest_keys, desc="  Manifests", unit=" manifest", leave=False, disable=not progress):
            process_manifest(store, manifest_key, target, stats, mode=mode, dry_run=dry_run,
                             bypass_governance=bypass_governance, ledger=ledger, executor=executor)
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    return stats


# --- CONFIGURATION ---

def load_config(config_path):
    """Reads the INI config. A missing default file is fine; flags can carry everything."""
    # Bucket prefixes and paths may carry a literal '%'
    config = configparser.ConfigParser(interpolation=None)
    if config_path and os.path.exists(config_path):
        try:
            config.read(config_path)
        except configparser.Error as e:
            raise ValueError(f"malformed config file {config_path}: {e}") from e
    return config


def _int_setting(value, name):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}")


def resolve_settings(args, config, config_path):
    """Merges flags over the config file. Raises ValueError on bad values."""
    settings = config['settings'] if config.has_section('settings') else {}
    aws = config['AWS'] if config.has_section('AWS') else {}

    def pick(flag, key, section=settings):
        return flag if flag is not None else section.get(key)

    bucket = pick(args.bucket, 's3_bucket')
    cluster = pick(args.cluster, 'cluster')
    if not bucket:
        raise ValueError("bucket is required (--bucket or s3_bucket in [settings])")
    if not cluster:
        raise ValueError("cluster is required (--cluster or cluster in [settings])")

    retention_days = _int_setting(args.retention, '--retention')
    min_days = _int_setting(args.min_retention, '--min-retention')
    max_days = _int_setting(args.max_retention, '--max-retention')
    # The file policy only applies when no policy flags were given
    if retention_days is None and min_days is None and max_days is None:
        retention_days = _int_setting(settings.get('retention_days'), 'retention_days')
        min_days = _int_setting(settings.get('min_retention_days'), 'min_retention_days')
        max_days = _int_setting(settings.get('max_retention_days'), 'max_retention_days')

    mode = (pick(args.mode, 'mode') or "GOVERNANCE").upper()
    if mode not in RETENTION_MODES:
        raise ValueError(f"mode must be one of {', '.join(RETENTION_MODES)}, got {mode!r}")

    workers = _int_setting(pick(args.workers, 'workers'), 'workers')
    if workers is None:
        workers = 1
    if workers < 1:
        raise ValueError("workers must be at least 1")

    max_attempts = _int_setting(aws.get('max_attempts'), 'max_attempts')
    if max_attempts is None:
        max_attempts = 5
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    dry_run = args.dry_run or config.getboolean('settings', 'dry_run', fallback=False)

    ledger_dir = pick(args.ledger_dir, 'ledger_dir')
    if not ledger_dir:
        base = os.path.dirname(os.path.abspath(config_path)) if config_path and os.path.exists(config_path) else os.getcwd()
        ledger_dir = os.path.join(base, 'logs')

    return {
        "bucket": bucket,
        "cluster": cluster,
        "retention_days": retention_days,
        "min_days": min_days,
        "max_days": max_days,
        "mode": mode,
        "workers": workers,
        "dry_run": dry_run,
        "bypass_governance": args.bypass_governance,
        "ledger_dir": ledger_dir,
        "region": aws.get('aws_region') or None,
        "profile": aws.get('aws_profile') or None,
        "max_attempts": max_attempts,
    }


def ensure_aws_metadata(profile=None, region=None):
    """
    Retrieves the current AWS Account ID and Region for the ledger.
    Falls back to 'REDACTED' if metadata cannot be fetched.
    """
    try:
        session = boto3.Session(profile_name=profile, region_name=region)
        account_id = session.client('sts').get_caller_identity().get('Account', 'REDACTED')
        return account_id, session.region_name or 'REDACTED'
    except (BotoCoreError, ClientError):
        # Offline or no credentials
        return "REDACTED", region or "REDACTED"


def setup_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(message)s",
    )
    # botocore is chatty at DEBUG
    for name in ('botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(name).setLevel(logging.WARNING)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="medusa-retention-refresher",
        description="Extend S3 object-lock retention for every file referenced by Medusa backup manifests.",
    )

    # --- Target ---
    parser.add_argument("--config", default=None, help=f"Path to config file (default: {DEFAULT_CONFIG_FILE} if present)")
    parser.add_argument("--bucket", type=str, help="S3 bucket name")
    parser.add_argument("--cluster", type=str, help="Cluster name (listing prefix)")

    # --- Policy ---
    parser.add_argument("--retention", type=int, metavar='DAYS', help="Lock every object until at least DAYS from now")
    parser.add_argument("--min-retention", type=int, metavar='DAYS', help="Update objects locked for fewer than DAYS from now")
    parser.add_argument("--max-retention", type=int, metavar='DAYS', help="With --min-retention: extend to DAYS from now")
    parser.add_argument("--mode", type=str.upper, choices=RETENTION_MODES, help="Object lock mode (default: GOVERNANCE)")
    parser.add_argument("--bypass-governance", action="store_true", help="Send x-amz-bypass-governance-retention on updates")

    # --- Execution ---
    parser.add_argument("--dry-run", action="store_true", help="Dry run mode - don't actually update retention")
    parser.add_argument("--workers", type=int, help="Concurrent object checks per manifest (default: 1)")
    parser.add_argument("--ledger-dir", type=str, help="Directory for the NDJSON audit ledger")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    parser.add_argument("--verbose", action="store_true", help="Log every object, not only changes")
    return parser


def log_summary(stats, dry_run):
    logger.info("-" * 60)
    logger.info("Manifests: %d (%d skipped)", stats["manifests"], stats["manifests_failed"])
    logger.info("Objects:   %d", stats["objects"])
    if dry_run:
        logger.info("  Would update: %d", stats[WOULD_UPDATE])
    else:
        logger.info("  Updated:      %d", stats[UPDATED])
    logger.info("  Sufficient:   %d", stats[SUFFICIENT])
    logger.info("  Check failed: %d", stats[SKIPPED])
    logger.info("  Update failed: %d", stats[FAILED])
    logger.info("-" * 60)


def main(argv=None, client=None, now=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    config_path = args.config or os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
    if args.config and not os.path.exists(args.config):
        logger.error("[FATAL] Configuration file not found at %s", args.config)
        return 2

    try:
        settings = resolve_settings(args, load_config(config_path), config_path)
        target = retention_target(
            now or datetime.now(timezone.utc),
            retention_days=settings["retention_days"],
            min_days=settings["min_days"],
            max_days=settings["max_days"],
        )
    except (ValueError, configparser.Error) as e:
        logger.error("[FATAL] %s", e)
        parser.print_usage(sys.stderr)
        return 2

    account_id, region = "REDACTED", settings["region"] or "REDACTED"
    if client is None:
        client = make_s3_client(settings["region"], settings["profile"], settings["max_attempts"])
        if not settings["dry_run"]:
            account_id, region = ensure_aws_metadata(settings["profile"], settings["region"])
    store = S3Store(client, settings["bucket"])

    ledger = None
    if not settings["dry_run"]:
        ledger = AuditLedger(settings["ledger_dir"], settings["bucket"], account_id, region)

    mission = "DRY RUN" if settings["dry_run"] else "LIVE"
    logger.info("--- Retention Refresh [%s] s3://%s/%s/ ---", mission, settings["bucket"], settings["cluster"])
    logger.info("Lock threshold %s, new windows until %s (%s)",
                format_ts(target.required), format_ts(target.until), settings["mode"])

    progress = not args.no_progress and sys.stderr.isatty()
    try:
        with logging_redirect_tqdm():
            stats = reconcile(
                store,
                settings["cluster"],
                target,
                mode=settings["mode"],
                dry_run=settings["dry_run"],
                bypass_governance=settings["bypass_governance"],
                workers=settings["workers"],
                ledger=ledger,
                progress=progress,
            )
    except DiscoveryError as e:
        logger.error("[FATAL] Failed to find manifests: %s", e)
        return 1

    log_summary(stats, settings["dry_run"])
    logger.info("Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
