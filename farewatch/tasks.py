"""tasks.py – APScheduler schedule for the monitoring service.

• every MONITORING_INTERVAL minutes – monitoring cycle over due watches
• once a day at REPORT_HOUR (REPORT_TIMEZONE) – status report + counter reset
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from apscheduler.schedulers.blocking import BlockingScheduler

from .aggregator import route_price_summary, summary_records
from .aviasales_fetcher import AviasalesFetcher
from .config import Settings, get_settings
from .db import SqliteStore
from .notifier import TelegramNotifier
from .orchestrator import MonitoringOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Optional[Settings] = None) -> MonitoringOrchestrator:
    """Wire the production collaborators into an orchestrator."""
    settings = settings or get_settings()
    store = SqliteStore(settings.db_path)
    fetcher = AviasalesFetcher(
        settings.tp_token, settings.tp_marker, timeout=settings.search_timeout_s
    )
    notifier = TelegramNotifier(settings.telegram_token, settings.telegram_chat_id)

    def price_summary(since: datetime) -> List[dict]:
        df = route_price_summary(
            settings.db_path, since=since, ceiling=settings.sanity_ceiling
        )
        return summary_records(df)

    return MonitoringOrchestrator(
        fetcher, store, notifier, settings, summary_source=price_summary
    )


def serve(settings: Optional[Settings] = None) -> None:
    """Run the monitoring service until interrupted."""
    settings = settings or get_settings()
    orchestrator = build_orchestrator(settings)
    orchestrator.store.migrate()

    sched = BlockingScheduler(timezone="UTC")
    orchestrator.start(sched)
    try:
        sched.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down monitoring service")
    finally:
        orchestrator.stop()
        if sched.running:
            sched.shutdown(wait=True)


if __name__ == "__main__":
    serve()
