# services.py - Per-application service container
# Built once in the lifespan and stored on app.state.services.

from dataclasses import dataclass, field
from typing import Callable

from fastapi import Request

from broadcast import BroadcastGateway
from cache import ResponseCache
from github_client import GitHubClient
from invitations import InvitationService
from mailer import Mailer
from notification_engine import NotificationEngine
from presence import RoomRegistry
from side_effects import KeyedLocks
from store import DocumentStore, SqlDocumentStore


@dataclass
class Services:
    store: DocumentStore
    registry: RoomRegistry
    gateway: BroadcastGateway
    cache: ResponseCache
    notifications: NotificationEngine
    invitations: InvitationService
    mailer: Mailer
    github_factory: Callable[[str], GitHubClient] = field(default=GitHubClient)


def build_services(
    session_factory,
    *,
    mailer: Mailer = None,
    cache: ResponseCache = None,
    github_factory: Callable[[str], GitHubClient] = GitHubClient,
) -> Services:
    store = SqlDocumentStore(session_factory)
    registry = RoomRegistry()
    gateway = BroadcastGateway(registry)
    locks = KeyedLocks()
    mailer = mailer or Mailer()
    notifications = NotificationEngine(store, gateway, locks)
    invitations = InvitationService(store, gateway, registry, notifications, mailer, locks)
    notifications.invitation_resolver = invitations.decline_if_pending
    return Services(
        store=store,
        registry=registry,
        gateway=gateway,
        cache=cache or ResponseCache(),
        notifications=notifications,
        invitations=invitations,
        mailer=mailer,
        github_factory=github_factory,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency for HTTP routes."""
    return request.app.state.services
