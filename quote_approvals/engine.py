"""
Wiring of the engine's services around one store.

The app builds a single Engine in its lifespan and keeps it on
``app.state.engine``; tests build their own with in-memory collaborators.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from quote_approvals.config import settings
from quote_approvals.services.approval_service import ApprovalService
from quote_approvals.services.business_hours import BusinessCalendar
from quote_approvals.services.delivery_service import DeliveryGateway, create_gateway
from quote_approvals.services.directory import Directory, create_directory
from quote_approvals.services.escalation_service import EscalationScheduler
from quote_approvals.services.notification_service import DispatchLimits, NotificationDispatcher
from quote_approvals.services.quote_service import QuoteService
from quote_approvals.services.repository import Repository
from quote_approvals.services.store import Store, create_store


@dataclass
class Engine:
    store: Store
    repo: Repository
    directory: Directory
    dispatcher: NotificationDispatcher
    approvals: ApprovalService
    quotes: QuoteService
    scheduler: EscalationScheduler


def build_engine(
    store: Optional[Store] = None,
    directory: Optional[Directory] = None,
    gateway: Optional[DeliveryGateway] = None,
    calendar: Optional[BusinessCalendar] = None,
    limits: Optional[DispatchLimits] = None,
    concurrency: Optional[int] = None,
) -> Engine:
    store = store or create_store(settings.STORE_BACKEND)
    directory = directory or create_directory()
    calendar = calendar or BusinessCalendar.from_settings()

    repo = Repository(store)
    dispatcher = NotificationDispatcher(
        repo, gateway or create_gateway(), directory, limits=limits, calendar=calendar
    )
    approvals = ApprovalService(repo, directory, notifier=dispatcher)
    return Engine(
        store=store,
        repo=repo,
        directory=directory,
        dispatcher=dispatcher,
        approvals=approvals,
        quotes=QuoteService(repo, approvals),
        scheduler=EscalationScheduler(
            repo, approvals, dispatcher, calendar=calendar, concurrency=concurrency
        ),
    )


def get_engine(request: Request) -> Engine:
    """FastAPI dependency: the engine built at startup."""
    return request.app.state.engine
