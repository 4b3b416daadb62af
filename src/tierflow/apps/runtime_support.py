from __future__ import annotations

from dataclasses import dataclass

from tierflow.core.billing.base import BillingGateway
from tierflow.core.billing.http_gateway import HttpBillingGateway
from tierflow.core.billing.sandbox import SandboxBillingGateway
from tierflow.core.config.loader import load_app_config
from tierflow.core.config.schema import AppConfig
from tierflow.core.datastore.sql_store import SqlUserDataStore
from tierflow.core.monitor.preservation import DriftCallback, PreservationMonitor
from tierflow.core.snapshots.store import SnapshotStore
from tierflow.core.telemetry.logging import configure_logging
from tierflow.core.tiers.catalog import TierCapabilitySet, build_catalog
from tierflow.core.tiers.resolver import TierCapabilityResolver
from tierflow.core.upgrade.events import ProgressBroadcaster
from tierflow.core.upgrade.executor import MigrationExecutor
from tierflow.core.upgrade.journal import SessionJournal
from tierflow.core.upgrade.registry import SessionRegistry
from tierflow.db.session import create_session_factory, init_db


@dataclass(slots=True)
class OrchestratorRuntime:
    cfg: AppConfig
    db_session_factory: object
    data_store: SqlUserDataStore
    billing: BillingGateway
    catalog: TierCapabilitySet
    resolver: TierCapabilityResolver
    snapshot_store: SnapshotStore
    journal: SessionJournal
    broadcaster: ProgressBroadcaster
    executor: MigrationExecutor

    def monitor(self, on_drift: DriftCallback | None = None) -> PreservationMonitor:
        return PreservationMonitor(
            data_store=self.data_store,
            snapshot_store=self.snapshot_store,
            poll_interval_seconds=self.cfg.monitor.poll_interval_seconds,
            on_drift=on_drift,
        )


def build_billing_gateway(cfg: AppConfig) -> BillingGateway:
    if cfg.billing.mode == "http":
        if not cfg.billing.base_url:
            raise ValueError("billing.base_url is required when billing.mode is 'http'")
        return HttpBillingGateway(
            base_url=cfg.billing.base_url,
            api_key_env=cfg.billing.api_key_env,
            timeout_seconds=cfg.billing.timeout_seconds,
            refund_attempts=cfg.billing.refund_attempts,
        )
    return SandboxBillingGateway()


def build_runtime(
    config_path: str | None = None,
    *,
    cfg: AppConfig | None = None,
    billing: BillingGateway | None = None,
) -> OrchestratorRuntime:
    cfg = cfg or load_app_config(instance_path=config_path)
    configure_logging(log_level=cfg.telemetry.log_level, json_logs=cfg.telemetry.json_logs)

    init_db(cfg.database.url)
    db_session_factory, _engine = create_session_factory(cfg.database.url)

    catalog = build_catalog(cfg.tiers)
    resolver = TierCapabilityResolver(catalog)
    data_store = SqlUserDataStore(db_session_factory)
    snapshot_store = SnapshotStore(
        data_store,
        db_session_factory,
        retention=cfg.snapshots.retention,
        retention_days=cfg.snapshots.retention_days,
    )
    journal = SessionJournal(db_session_factory)
    broadcaster = ProgressBroadcaster()
    billing = billing or build_billing_gateway(cfg)
    executor = MigrationExecutor(
        data_store=data_store,
        billing=billing,
        snapshot_store=snapshot_store,
        resolver=resolver,
        registry=SessionRegistry(),
        broadcaster=broadcaster,
        journal=journal,
        config=cfg.upgrade,
    )
    return OrchestratorRuntime(
        cfg=cfg,
        db_session_factory=db_session_factory,
        data_store=data_store,
        billing=billing,
        catalog=catalog,
        resolver=resolver,
        snapshot_store=snapshot_store,
        journal=journal,
        broadcaster=broadcaster,
        executor=executor,
    )
