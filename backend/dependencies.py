"""
Composition root for the intake services.

build_services() wires every service to one database handle; the FastAPI
lifespan keeps the result on app.state.services for the life of the process.
Routes receive services through the get_* providers below, which tests
replace with app.dependency_overrides.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from services.email_service import EmailService
from services.expiry_sweeper import ExpirySweeper
from services.quote_service import QuoteService
from services.trial_accounts import TrialAccountGenerator
from services.trial_lifecycle import TrialLifecycleService
from services.trial_store import TrialStore


@dataclass
class ServiceContainer:
    trials: TrialLifecycleService
    sweeper: ExpirySweeper
    quotes: QuoteService
    notifier: EmailService


def build_services(db, notifier: Optional[EmailService] = None) -> ServiceContainer:
    notifier = notifier or EmailService()
    store = TrialStore(db)
    quotes = QuoteService(db, notifier=notifier)
    trials = TrialLifecycleService(
        store=store,
        accounts=TrialAccountGenerator(store),
        notifier=notifier,
        quotes=quotes,
    )
    sweeper = ExpirySweeper(store, notifier=notifier)
    return ServiceContainer(trials=trials, sweeper=sweeper, quotes=quotes, notifier=notifier)


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_trial_service(request: Request) -> TrialLifecycleService:
    return get_services(request).trials


def get_expiry_sweeper(request: Request) -> ExpirySweeper:
    return get_services(request).sweeper


def get_quote_service(request: Request) -> QuoteService:
    return get_services(request).quotes
