# src/trapmetrics/checkmgr/resolver.py
"""CheckResolver: lazily resolves where metrics are submitted.

Resolution runs at most once at a time, under a single lock held for the
whole attempt. Callers arriving while it runs block until it completes or
fails. Resolution builds its result in locals and commits only at the end,
so a failed attempt leaves nothing half-resolved; the next call starts over.

Lookup order:
1. Plaintext (http:) submission URL - adopted as-is, no remote calls
2. Submission URL - check looked up by the URL's UUID; its id replaces the
   URL for any later re-resolution
3. Check id
4. Search on instance id, check type and search tag
5. No match - a new check bundle is created on a selected broker

With no API token, check management is disabled: the submission URL is the
only way to locate the trap and every metric is considered active.
"""

from __future__ import annotations

import hashlib
import secrets
import socket
import ssl
import sys
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from urllib.parse import urlsplit

import structlog

from trapmetrics.api.client import APIClient
from trapmetrics.api.models import Broker, Check, CheckBundle, CheckBundleMetric
from trapmetrics.checkmgr.broker import BrokerSelector, get_broker_cn
from trapmetrics.checkmgr.cert import load_ca_context
from trapmetrics.core.config import MetricsSettings
from trapmetrics.core.defaults import get_internal_default
from trapmetrics.errors import AmbiguousCheckError, CheckResolutionError, ConfigurationError, TrapMetricsError

logger = structlog.get_logger(__name__)


class ResolverState(StrEnum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class Trap:
    """A resolved submission endpoint.

    Attributes:
        url: Submission URL metrics are POSTed to
        tls: Whether the URL requires TLS
        server_name: TLS server name to present (None for plaintext)
        ssl_context: Context trusting the broker CA (None for plaintext)
    """

    url: str
    tls: bool
    server_name: str | None = None
    ssl_context: ssl.SSLContext | None = None


def _make_secret() -> str:
    length = int(get_internal_default("check", "secret_length"))
    return hashlib.sha256(secrets.token_bytes(2048)).hexdigest()[:length]


def _program_name() -> str:
    return Path(sys.argv[0]).name if sys.argv and sys.argv[0] else "python"


class CheckResolver:
    """Resolves the trap and keeps the check's metric inventory in sync.

    Thread Safety:
        - ensure_ready() is serialized by _resolve_lock (double-checked)
        - the active/available metric maps, pending tags and cached bundle
          are guarded by _metrics_lock
        - register_metrics() is serialized by _update_lock so two flushes
          never race to update the bundle
    """

    def __init__(
        self,
        settings: MetricsSettings,
        *,
        client: APIClient | None = None,
        broker_selector: BrokerSelector | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            settings: Root settings (api, check and broker sections are used)
            client: API client; created from settings.api when omitted and
                check management is enabled
            broker_selector: Broker selection strategy; created when omitted

        Raises:
            ConfigurationError: Neither an API token nor a submission URL is
                configured
        """
        self._settings = settings
        check = settings.check

        self._enabled = settings.api.enabled
        self._submission_url = check.submission_url
        self._check_id = check.id

        if not self._enabled:
            if not self._submission_url:
                raise ConfigurationError("Invalid check manager configuration (no API token AND no submission url)")
            self._client: APIClient | None = None
            self._broker_selector: BrokerSelector | None = None
        else:
            self._client = client or APIClient(settings.api)
            self._broker_selector = broker_selector or BrokerSelector(self._client, settings.broker, check.type)

        program = _program_name()
        self._check_type = check.type
        self._instance_id = check.instance_id or f"{socket.gethostname()}:{program}"
        self._search_tag = check.search_tag or f"service:{program}"
        self._display_name = check.display_name or f"{self._instance_id} /{self._check_type}"

        self._state = ResolverState.UNRESOLVED
        self._resolve_lock = threading.Lock()
        self._metrics_lock = threading.Lock()
        self._update_lock = threading.Lock()

        self._trap: Trap | None = None
        self._bundle: CheckBundle | None = None
        self._last_update = 0.0
        # name -> True when active on the check; every metric the check declares
        self._available: dict[str, bool] = {}
        self._active: set[str] = set()
        self._pending_tags: dict[str, list[str]] = {}

    @property
    def enabled(self) -> bool:
        """Whether check management is enabled (an API token is configured)."""
        return self._enabled

    @property
    def state(self) -> ResolverState:
        return self._state

    @property
    def trap(self) -> Trap | None:
        return self._trap

    @property
    def check_bundle(self) -> CheckBundle | None:
        with self._metrics_lock:
            return self._bundle

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def search_tag(self) -> str:
        return self._search_tag

    # =========================================================================
    # Resolution
    # =========================================================================

    def ensure_ready(self) -> Trap:
        """Resolve the trap if needed and return it.

        Raises:
            APIError: A remote lookup failed
            CheckResolutionError: A lookup returned unusable data
            AmbiguousCheckError: More than one active check matched
            BrokerSelectionError: A check had to be created and no broker
                was viable
        """
        trap = self._trap
        if self._state is ResolverState.READY and trap is not None:
            return trap

        with self._resolve_lock:
            if self._state is ResolverState.READY and self._trap is not None:
                return self._trap

            self._state = ResolverState.RESOLVING
            try:
                trap, bundle = self._resolve()
            except Exception:
                self._state = ResolverState.UNRESOLVED
                raise

            with self._metrics_lock:
                self._bundle = bundle
                if bundle is not None:
                    self._load_inventory(bundle)
            self._trap = trap
            self._last_update = time.monotonic()
            self._state = ResolverState.READY

        logger.debug("Trap resolved", url=trap.url, tls=trap.tls, server_name=trap.server_name)
        return trap

    def _resolve(self) -> tuple[Trap, CheckBundle | None]:
        url = self._submission_url
        if url and urlsplit(url).scheme == "http":
            return Trap(url=url, tls=False), None

        if not self._enabled:
            assert url is not None  # enforced in __init__
            # Management disabled: the configured URL is all there is
            return Trap(
                url=url,
                tls=True,
                server_name=urlsplit(url).hostname,
                ssl_context=load_ca_context(None),
            ), None

        client = self._client
        assert client is not None

        check: Check | None = None
        bundle: CheckBundle | None = None
        broker: Broker | None = None

        if url:
            check = client.fetch_check_by_submission_url(url)
            # The URL stops working if the check moves to another broker;
            # any later re-resolution goes through the check id instead.
            try:
                self._check_id = check.id
                self._submission_url = None
            except ValueError:
                logger.warning("Unable to extract check id from cid", cid=check.cid)
        elif self._check_id is not None:
            check = client.fetch_check_by_id(self._check_id)
        else:
            bundle = self._search()
            if bundle is None:
                bundle, broker = self._create_check()

        if bundle is None:
            assert check is not None
            if not check.check_bundle_cid:
                raise CheckResolutionError(f"Check {check.cid} has no check bundle")
            bundle = client.fetch_check_bundle(check.check_bundle_cid)

        if broker is None:
            if not bundle.brokers:
                raise CheckResolutionError(f"Check bundle {bundle.cid} has no brokers")
            broker = client.fetch_broker(bundle.brokers[0])

        trap_url = bundle.submission_url
        if not trap_url:
            raise CheckResolutionError(f"Check bundle {bundle.cid} has no submission url")

        if urlsplit(trap_url).scheme != "https":
            return Trap(url=trap_url, tls=False), bundle

        return Trap(
            url=trap_url,
            tls=True,
            server_name=get_broker_cn(broker, trap_url),
            ssl_context=load_ca_context(client),
        ), bundle

    def _search(self) -> CheckBundle | None:
        """Find the single active bundle matching this instance.

        Returns None when nothing matches (a check will be created).
        """
        assert self._client is not None
        criteria = (
            f'(active:1)(host:"{self._instance_id}")(type:"{self._check_type}")(tags:{self._search_tag})'
        )
        bundles = self._client.search_check_bundles(criteria)
        if not bundles:
            return None

        active = [bundle for bundle in bundles if bundle.status == "active"]
        if len(active) > 1:
            raise AmbiguousCheckError(f"Multiple check bundles match criteria {criteria}")
        if not active:
            raise CheckResolutionError(f"No active check bundle matches criteria {criteria}")
        return active[0]

    def _create_check(self) -> tuple[CheckBundle, Broker]:
        assert self._client is not None
        assert self._broker_selector is not None
        check = self._settings.check

        broker = self._broker_selector.select()
        bundle = CheckBundle(
            brokers=[broker.cid],
            config={"async_metrics": True, "secret": check.secret or _make_secret()},
            display_name=self._display_name,
            metrics=[],
            period=int(get_internal_default("check", "period")),
            status="active",
            tags=[self._search_tag, *check.tags],
            target=self._instance_id,
            timeout=float(get_internal_default("check", "timeout")),
            type=self._check_type,
        )
        created = self._client.create_check_bundle(bundle)
        logger.info("Created check bundle", cid=created.cid, broker=broker.cid, target=self._instance_id)
        return created, broker

    def _load_inventory(self, bundle: CheckBundle) -> None:
        """Rebuild the available and active maps from a bundle. Caller holds _metrics_lock."""
        self._available = {metric.name: metric.status == "active" for metric in bundle.metrics}
        self._active = {name for name, active in self._available.items() if active}

    def refresh_trap(self) -> None:
        """Drop the resolved trap if its URL is older than check.max_url_age.

        Called after a submission fails every retry; the next ensure_ready()
        resolves again (by check id when the URL was looked up).
        """
        if not self._enabled or self._state is not ResolverState.READY:
            return
        with self._resolve_lock:
            age = time.monotonic() - self._last_update
            if age < self._settings.check.max_url_age:
                return
            logger.info("Refreshing trap", age=round(age, 1))
            self._trap = None
            self._state = ResolverState.UNRESOLVED

    # =========================================================================
    # Metric inventory
    # =========================================================================

    def is_metric_active(self, name: str) -> bool:
        """Whether the check accepts this metric. Always True when management is disabled."""
        if not self._enabled:
            return True
        with self._metrics_lock:
            return name in self._active

    def activate_metric(self, name: str) -> bool:
        """Whether a metric should be registered on the check.

        True when the check does not declare it at all, or declares it
        inactive and check.force_metric_activation is set.
        """
        if not self._enabled:
            return False
        with self._metrics_lock:
            if name not in self._available:
                return True
            return not self._available[name] and self._settings.check.force_metric_activation

    def add_metric_tags(self, name: str, tags: list[str], append: bool) -> bool:
        """Stage tag changes for a metric; they ride along on the next update.

        Args:
            name: Metric name
            tags: Encoded tags (category:value)
            append: Add to the current tags instead of replacing them

        Returns:
            True if the staged tags changed
        """
        if append and not tags:
            return False

        with self._metrics_lock:
            current = self._pending_tags.get(name)
            if current is None:
                current = []
                if self._bundle is not None:
                    for metric in self._bundle.metrics:
                        if metric.name == name:
                            current = list(metric.tags)
                            break

            if append:
                additions = [tag for tag in tags if tag not in current]
                if not additions:
                    return False
                updated = current + additions
            else:
                updated = list(dict.fromkeys(tags))
                if sorted(updated) == sorted(current):
                    return False

            self._pending_tags[name] = updated
            return True

    def register_metrics(self, new_metrics: dict[str, CheckBundleMetric]) -> bool:
        """Add new metrics (and staged tag changes) to the check bundle.

        Returns:
            True if the check is up to date (including the no-op case),
            False if the update failed. Failures are logged; the metrics
            stay inactive and are offered again on the next flush.
        """
        if not self._enabled:
            return True

        with self._update_lock:
            with self._metrics_lock:
                bundle = self._bundle
                pending = dict(self._pending_tags)

            if not new_metrics and not pending:
                return True
            if bundle is None or self._state is not ResolverState.READY:
                logger.debug("Check not resolved, deferring metric registration", new=len(new_metrics))
                return False

            metrics: list[CheckBundleMetric] = []
            seen: set[str] = set()
            # pending tags written into this update; tags for metrics not yet
            # on the check stay pending until the metric is registered
            applied: dict[str, list[str]] = {}
            for metric in bundle.metrics:
                update: dict[str, object] = {}
                if metric.name in pending:
                    update["tags"] = applied[metric.name] = pending[metric.name]
                if metric.name in new_metrics:
                    update["status"] = "active"
                    seen.add(metric.name)
                metrics.append(metric.model_copy(update=update) if update else metric)
            for name, metric in new_metrics.items():
                if name in seen:
                    continue
                if name in pending:
                    applied[name] = pending[name]
                    metric = metric.model_copy(update={"tags": pending[name]})
                metrics.append(metric)

            if not new_metrics and not applied:
                return True

            assert self._client is not None
            try:
                updated = self._client.update_check_bundle(bundle.model_copy(update={"metrics": metrics}))
            except TrapMetricsError as e:
                logger.error("Failed to update check bundle with new metrics", new=len(new_metrics), error=str(e))
                return False

            with self._metrics_lock:
                self._bundle = updated
                self._load_inventory(updated)
                self._active.update(new_metrics)
                for name in new_metrics:
                    self._available[name] = True
                for name, tags in applied.items():
                    if self._pending_tags.get(name) == tags:
                        del self._pending_tags[name]

        logger.debug("Registered metrics", new=sorted(new_metrics), tags=len(applied))
        return True
