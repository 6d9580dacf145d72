"""Shared fixtures: share builders and an in-process fake backend.

The fake backend is a small FastAPI app served through ``httpx.ASGITransport``
so the real REST client, status mapping and JSON decoding are exercised
without a network.
"""
import itertools
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
import pytest
from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from bookshare.services.chat_channel import ChatChannelManager
from bookshare.services.http_client import ShareApiClient
from bookshare.services.hub_transport import HubTransport
from bookshare.share import Notification, Share
from bookshare.share_status import ShareStatus

BASE_URL = "http://testserver"
OWNER_ID = "owner-1"
BORROWER_ID = "borrower-1"
TEST_TOKEN = "test-token"


def share_dict(
    share_id: int,
    status: ShareStatus = ShareStatus.REQUESTED,
    title: str = "Dune",
    owner_id: str = OWNER_ID,
    borrower_id: str = BORROWER_ID,
    is_disputed: bool = False,
    return_date: Optional[str] = "2026-11-01T00:00:00Z",
) -> Dict[str, Any]:
    return {
        "id": share_id,
        "userBookId": 100 + share_id,
        "borrower": borrower_id,
        "returnDate": return_date,
        "status": status.value,
        "isDisputed": is_disputed,
        "disputedBy": borrower_id if is_disputed else None,
        "userBook": {
            "id": 100 + share_id,
            "userId": owner_id,
            "bookId": 200 + share_id,
            "status": 1,
            "book": {"id": 200 + share_id, "title": title, "author": "Frank Herbert", "thumbnailUrl": None},
            "user": {"id": owner_id, "email": "owner@example.com", "firstName": "Olive", "lastName": "Owner"},
        },
        "borrowerUser": {"id": borrower_id, "email": "borrower@example.com", "firstName": "Bo", "lastName": "Rower"},
    }


def build_share(share_id: int = 1, status: ShareStatus = ShareStatus.REQUESTED, **kwargs) -> Share:
    return Share.from_dict(share_dict(share_id, status, **kwargs))


def notification_dict(notification_id: int, share_id: Optional[int], notification_type: str) -> Dict[str, Any]:
    return {
        "id": notification_id,
        "userId": BORROWER_ID,
        "notificationType": notification_type,
        "message": f"{notification_type} on share {share_id}",
        "createdAt": "2026-10-01T12:00:00Z",
        "readAt": None,
        "shareId": share_id,
        "createdByUserId": OWNER_ID,
    }


def build_notification(notification_id: int, share_id: Optional[int], notification_type: str) -> Notification:
    return Notification.from_dict(notification_dict(notification_id, share_id, notification_type))


def message_dict(message_id: int, share_id: int, content: str, sender_id: str = OWNER_ID) -> Dict[str, Any]:
    return {
        "id": message_id,
        "content": content,
        "shareId": share_id,
        "sentAt": f"2026-10-01T12:{message_id % 60:02d}:00Z",
        "sender": {"id": sender_id, "email": f"{sender_id}@example.com", "fullName": sender_id.title()},
    }


class FakeBackend:
    """In-memory state behind the fake API, inspectable from tests."""

    def __init__(self):
        self.user_id = BORROWER_ID
        self.shares: Dict[int, Dict[str, Any]] = {}
        self.archived: Set[int] = set()
        self.notifications: List[Dict[str, Any]] = []
        self.messages: Dict[int, List[Dict[str, Any]]] = {}
        # (method, path) -> status code to answer with instead of handling the request
        self.failures: Dict[Tuple[str, str], int] = {}
        self.requests: List[Tuple[str, str]] = []
        self.bodies: List[Any] = []
        self._message_ids = itertools.count(1000)

    def add_share(self, share_id: int, status: ShareStatus = ShareStatus.REQUESTED, archived: bool = False, **kwargs):
        self.shares[share_id] = share_dict(share_id, status, **kwargs)
        if archived:
            self.archived.add(share_id)
        return self.shares[share_id]

    def add_notification(self, notification_id: int, share_id: Optional[int], notification_type: str):
        self.notifications.append(notification_dict(notification_id, share_id, notification_type))

    def add_messages(self, share_id: int, count: int):
        # Stored newest first, like the API returns them
        for i in range(count):
            message_id = self.next_message_id()
            self.messages.setdefault(share_id, []).insert(0, message_dict(message_id, share_id, f"message {i}"))

    def next_message_id(self) -> int:
        return next(self._message_ids)

    def fail(self, method: str, path: str, status_code: int):
        self.failures[(method, path)] = status_code

    def count(self, method: str, path: str) -> int:
        return self.requests.count((method, path))

    def listing(self, role: str, archived: bool) -> List[Dict[str, Any]]:
        result = []
        for share_id, share in self.shares.items():
            if (share_id in self.archived) != archived:
                continue
            if role == "borrower" and share["borrower"] == self.user_id:
                result.append(share)
            elif role == "lender" and share["userBook"]["userId"] == self.user_id:
                result.append(share)
        return result


def build_app(backend: FakeBackend) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def record_and_authorize(request: Request, call_next):
        backend.requests.append((request.method, request.url.path))
        if request.headers.get("Authorization") != f"Bearer {TEST_TOKEN}":
            return JSONResponse({"detail": "Not authenticated"}, status_code=401)
        status_code = backend.failures.get((request.method, request.url.path))
        if status_code:
            return JSONResponse({"detail": "Injected failure"}, status_code=status_code)
        return await call_next(request)

    def get_share(share_id: int):
        return backend.shares.get(share_id)

    def not_found():
        return JSONResponse({"detail": "Share not found"}, status_code=404)

    @app.get("/shares/borrower")
    async def borrower_shares():
        return backend.listing("borrower", False)

    @app.get("/shares/lender")
    async def lender_shares():
        return backend.listing("lender", False)

    @app.get("/shares/borrower/archived")
    async def archived_borrower_shares():
        return backend.listing("borrower", True)

    @app.get("/shares/lender/archived")
    async def archived_lender_shares():
        return backend.listing("lender", True)

    @app.put("/shares/{share_id}/status")
    async def update_status(share_id: int, payload: dict = Body(...)):
        backend.bodies.append(payload)
        share = get_share(share_id)
        if share is None:
            return not_found()
        share["status"] = payload["Status"]
        return share

    @app.put("/shares/{share_id}/return-date")
    async def update_return_date(share_id: int, payload: dict = Body(...)):
        backend.bodies.append(payload)
        share = get_share(share_id)
        if share is None:
            return not_found()
        share["returnDate"] = payload["returnDate"]
        return share

    @app.post("/shares/{share_id}/archive")
    async def archive(share_id: int):
        if get_share(share_id) is None:
            return not_found()
        backend.archived.add(share_id)
        return Response(status_code=204)

    @app.post("/shares/{share_id}/unarchive")
    async def unarchive(share_id: int):
        if get_share(share_id) is None:
            return not_found()
        backend.archived.discard(share_id)
        return Response(status_code=204)

    @app.post("/shares/{share_id}/dispute")
    async def dispute(share_id: int):
        share = get_share(share_id)
        if share is None:
            return not_found()
        if share["isDisputed"]:
            return JSONResponse({"detail": "Share is already disputed"}, status_code=409)
        share["isDisputed"] = True
        share["disputedBy"] = backend.user_id
        return share

    @app.get("/notifications")
    async def notifications():
        return backend.notifications

    @app.patch("/notifications/shares/{share_id}/read")
    async def mark_share_read(share_id: int):
        backend.notifications = [n for n in backend.notifications if n["shareId"] != share_id]
        return Response(status_code=204)

    @app.patch("/notifications/shares/{share_id}/chat/read")
    async def mark_chat_read(share_id: int):
        backend.notifications = [
            n for n in backend.notifications
            if not (n["shareId"] == share_id and n["notificationType"] == "ShareMessageReceived")
        ]
        return Response(status_code=204)

    @app.get("/shares/{share_id}/chat/messages")
    async def chat_messages(share_id: int, page: int = 1, pageSize: int = 50):
        messages = backend.messages.get(share_id, [])
        start = (page - 1) * pageSize
        return {
            "messages": messages[start:start + pageSize],
            "totalCount": len(messages),
            "page": page,
            "pageSize": pageSize,
            "hasNextPage": start + pageSize < len(messages),
        }

    @app.post("/shares/{share_id}/chat/messages")
    async def send_message(share_id: int, payload: dict = Body(...)):
        backend.bodies.append(payload)
        message = message_dict(backend.next_message_id(), share_id, payload["content"], sender_id=backend.user_id)
        backend.messages.setdefault(share_id, []).insert(0, message)
        return message

    return app


@pytest.fixture
def make_share():
    return build_share


@pytest.fixture
def make_notification():
    return build_notification


@pytest.fixture
def message_payload():
    return message_dict


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def api_client(backend, credentials):
    return ShareApiClient(
        base_url=BASE_URL,
        credential_store=credentials,
        retries=0,
        backoff=0,
        transport=httpx.ASGITransport(app=build_app(backend)),
    )


@pytest.fixture
def make_client(backend, credentials):
    """Build a client on the fake backend with custom credentials or retries."""

    def factory(credential_store=None, retries=0):
        return ShareApiClient(
            base_url=BASE_URL,
            credential_store=credential_store or credentials,
            retries=retries,
            backoff=0,
            transport=httpx.ASGITransport(app=build_app(backend)),
        )

    return factory


class FakeHubTransport(HubTransport):
    """Scripted stand-in for the websocket transport."""

    def __init__(self, url: str, hub: "FakeHub"):
        self.url = url
        self.hub = hub
        self.handlers: Dict[str, List] = {}
        self.close_handlers: List = []
        self.invocations: List[Tuple[str, tuple]] = []
        self.starts = 0
        self.stops = 0

    async def start(self) -> None:
        self.starts += 1
        if self.hub.fail_starts:
            self.hub.fail_starts -= 1
            raise ConnectionError("connection refused")

    async def stop(self) -> None:
        self.stops += 1

    async def invoke(self, method: str, *args: Any) -> Any:
        self.invocations.append((method, args))
        error = self.hub.invoke_errors.get(method)
        if error is not None:
            raise error
        return None

    def on(self, target: str, handler) -> None:
        self.handlers.setdefault(target, []).append(handler)

    def on_close(self, handler) -> None:
        self.close_handlers.append(handler)

    def emit(self, target: str, *args: Any) -> None:
        for handler in self.handlers.get(target, []):
            handler(*args)

    def drop(self, error: Optional[BaseException] = None) -> None:
        for handler in self.close_handlers:
            handler(error)

    def calls(self, method: str) -> List[tuple]:
        return [args for name, args in self.invocations if name == method]


class FakeHub:
    """Hands out fake transports and records reconnect delays."""

    def __init__(self):
        self.transports: List[FakeHubTransport] = []
        self.fail_starts = 0
        self.invoke_errors: Dict[str, BaseException] = {}
        self.delays: List[float] = []

    def factory(self, url: str) -> FakeHubTransport:
        transport = FakeHubTransport(url, self)
        self.transports.append(transport)
        return transport

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)

    @property
    def current(self) -> FakeHubTransport:
        return self.transports[-1]

    def manager(self, credential_store, **kwargs) -> ChatChannelManager:
        kwargs.setdefault("max_reconnect_attempts", 5)
        kwargs.setdefault("reconnect_base_delay", 1.0)
        kwargs.setdefault("reconnect_max_delay", 30.0)
        return ChatChannelManager(
            credential_store=credential_store,
            hub_url="http://testserver/chathub",
            transport_factory=self.factory,
            sleep=self.sleep,
            **kwargs,
        )


@pytest.fixture
def hub():
    return FakeHub()


@pytest.fixture
def channel(hub, credentials):
    return hub.manager(credentials)
