"""DynamoDB-backed stores.

Tables are keyed on ``id`` with GSIs on the lookup attribute and
``created_at`` as sort key. Times are stored as ISO-8601 UTC strings so
range filters compare lexicographically; durations are integer nanoseconds;
``ttl`` is the epoch second of ``expires_at`` for DynamoDB expiry.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from .approval import Request
from .breakglass import BreakGlassEvent
from .clock import iso, parse_iso, utcnow
from .errors import (
    BreakGlassNotFoundError,
    ConcurrentModificationError,
    NotFoundError,
    RecordExistsError,
    RequestNotFoundError,
    SessionExistsError,
    SessionNotFoundError,
    StoreError,
)
from .session import STATUS_ACTIVE, ServerSession
from .stores import effective_limit

if TYPE_CHECKING:
    from .context import CallContext

GSI_REQUESTER = "gsi-requester"
GSI_INVOKER = "gsi-invoker"
GSI_USER = "gsi-user"
GSI_STATUS = "gsi-status"
GSI_PROFILE = "gsi-profile"
GSI_SERVER_INSTANCE = "gsi-server-instance"

_NANOS_PER_MICRO = 1000

T = TypeVar("T")


def duration_to_nanos(value: timedelta) -> int:
    return (value // timedelta(microseconds=1)) * _NANOS_PER_MICRO


def nanos_to_duration(raw: Any) -> timedelta:
    return timedelta(microseconds=int(raw or 0) // _NANOS_PER_MICRO)


def _ttl(expires_at: datetime) -> int:
    return int(expires_at.timestamp())


def _s(item: dict[str, Any], key: str) -> str:
    return str(item.get(key) or "")


def _error_code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return str(e.response.get("Error", {}).get("Code") or "")
    return ""


def request_to_item(req: Request) -> dict[str, Any]:
    return {
        "id": req.id,
        "requester": req.requester,
        "profile": req.profile,
        "justification": req.justification,
        "duration": duration_to_nanos(req.duration),
        "status": req.status,
        "created_at": iso(req.created_at),
        "updated_at": iso(req.updated_at),
        "expires_at": iso(req.expires_at),
        "ttl": _ttl(req.expires_at),
        "approver": req.approver,
        "approver_comment": req.approver_comment,
    }


def request_from_item(item: dict[str, Any]) -> Request:
    return Request(
        id=_s(item, "id"),
        requester=_s(item, "requester"),
        profile=_s(item, "profile"),
        justification=_s(item, "justification"),
        duration=nanos_to_duration(item.get("duration")),
        status=_s(item, "status"),
        created_at=parse_iso(_s(item, "created_at")),
        updated_at=parse_iso(_s(item, "updated_at")),
        expires_at=parse_iso(_s(item, "expires_at")),
        approver=_s(item, "approver"),
        approver_comment=_s(item, "approver_comment"),
        version=_s(item, "updated_at"),
    )


def break_glass_to_item(event: BreakGlassEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "invoker": event.invoker,
        "profile": event.profile,
        "reason_code": event.reason_code,
        "justification": event.justification,
        "duration": duration_to_nanos(event.duration),
        "status": event.status,
        "created_at": iso(event.created_at),
        "updated_at": iso(event.updated_at),
        "expires_at": iso(event.expires_at),
        "ttl": _ttl(event.expires_at),
        "closed_by": event.closed_by,
        "closed_reason": event.closed_reason,
        "request_id": event.request_id,
    }


def break_glass_from_item(item: dict[str, Any]) -> BreakGlassEvent:
    return BreakGlassEvent(
        id=_s(item, "id"),
        invoker=_s(item, "invoker"),
        profile=_s(item, "profile"),
        reason_code=_s(item, "reason_code"),
        justification=_s(item, "justification"),
        duration=nanos_to_duration(item.get("duration")),
        status=_s(item, "status"),
        created_at=parse_iso(_s(item, "created_at")),
        updated_at=parse_iso(_s(item, "updated_at")),
        expires_at=parse_iso(_s(item, "expires_at")),
        closed_by=_s(item, "closed_by"),
        closed_reason=_s(item, "closed_reason"),
        request_id=_s(item, "request_id"),
        version=_s(item, "updated_at"),
    )


def session_to_item(sess: ServerSession) -> dict[str, Any]:
    item = sess.to_dict()
    item["request_count"] = int(sess.request_count)
    item["ttl"] = _ttl(sess.expires_at)
    return item


def session_from_item(item: dict[str, Any]) -> ServerSession:
    return ServerSession(
        id=_s(item, "id"),
        user=_s(item, "user"),
        profile=_s(item, "profile"),
        server_instance_id=_s(item, "server_instance_id"),
        status=_s(item, "status"),
        started_at=parse_iso(_s(item, "started_at")),
        last_access_at=parse_iso(_s(item, "last_access_at")),
        expires_at=parse_iso(_s(item, "expires_at")),
        created_at=parse_iso(_s(item, "created_at")),
        updated_at=parse_iso(_s(item, "updated_at")),
        request_count=int(item.get("request_count") or 0),
        source_identity=_s(item, "source_identity"),
        revoked_by=_s(item, "revoked_by"),
        revoked_reason=_s(item, "revoked_reason"),
        version=_s(item, "updated_at"),
    )


class _DynamoStore(Generic[T]):
    not_found: type[NotFoundError] = NotFoundError
    exists_error: type[RecordExistsError] = RecordExistsError
    kind = "record"

    def __init__(
        self,
        table_name: str,
        *,
        to_item: Callable[[T], dict[str, Any]],
        from_item: Callable[[dict[str, Any]], T],
        resource: Any | None = None,
        region: str | None = None,
    ) -> None:
        self.table_name = table_name
        self._to_item = to_item
        self._from_item = from_item
        self._resource = resource
        self._region = region
        self._table_obj: Any | None = None

    def _table(self) -> Any:
        if self._table_obj is None:
            if self._resource is None:
                self._resource = boto3.resource("dynamodb", region_name=self._region)
            self._table_obj = self._resource.Table(self.table_name)
        return self._table_obj

    def _wrap(self, e: Exception, operation: str) -> StoreError:
        return StoreError(str(e), table=self.table_name, operation=operation)

    def _create(self, ctx: CallContext, record: Any) -> None:
        ctx.check()
        try:
            self._table().put_item(
                Item=self._to_item(record),
                ConditionExpression="attribute_not_exists(id)",
            )
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                raise self.exists_error(f"{record.id}: {self.kind} already exists") from e
            raise self._wrap(e, "PutItem") from e
        except BotoCoreError as e:
            raise self._wrap(e, "PutItem") from e

    def _get(self, ctx: CallContext, record_id: str) -> T:
        ctx.check()
        try:
            resp = self._table().get_item(Key={"id": record_id})
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "GetItem") from e
        item = resp.get("Item")
        if not item:
            raise self.not_found(f"{record_id}: {self.kind} not found")
        return self._from_item(item)

    def _exists(self, ctx: CallContext, record_id: str) -> bool:
        ctx.check()
        try:
            resp = self._table().get_item(Key={"id": record_id}, ProjectionExpression="id")
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "GetItem") from e
        return bool(resp.get("Item"))

    def _update(self, ctx: CallContext, record: Any) -> None:
        ctx.check()
        # Condition on the stored string verbatim, not a re-serialized datetime.
        previous = record.version or iso(record.updated_at)
        stamped = utcnow()
        item = self._to_item(record)
        item["updated_at"] = iso(stamped)
        try:
            self._table().put_item(
                Item=item,
                ConditionExpression="attribute_exists(id) AND updated_at = :old_updated_at",
                ExpressionAttributeValues={":old_updated_at": previous},
            )
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                if not self._exists(ctx, record.id):
                    raise self.not_found(f"{record.id}: {self.kind} not found") from e
                raise ConcurrentModificationError(f"{record.id}: {self.kind} was modified concurrently") from e
            raise self._wrap(e, "PutItem") from e
        except BotoCoreError as e:
            raise self._wrap(e, "PutItem") from e
        record.updated_at = stamped
        record.version = item["updated_at"]

    def _query_index(self, ctx: CallContext, index: str, key_attr: str, value: str, limit: int) -> list[T]:
        ctx.check()
        try:
            resp = self._table().query(
                IndexName=index,
                KeyConditionExpression=Key(key_attr).eq(value),
                ScanIndexForward=False,  # newest first
                Limit=effective_limit(limit),
            )
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, f"Query:{index}") from e
        return [self._from_item(item) for item in resp.get("Items", []) or []]


class DynamoRequestStore(_DynamoStore[Request]):
    not_found = RequestNotFoundError
    kind = "request"

    def __init__(self, table_name: str, *, resource: Any | None = None, region: str | None = None) -> None:
        super().__init__(
            table_name,
            to_item=request_to_item,
            from_item=request_from_item,
            resource=resource,
            region=region,
        )

    def create(self, ctx: CallContext, request: Request) -> None:
        self._create(ctx, request)

    def get(self, ctx: CallContext, request_id: str) -> Request:
        return self._get(ctx, request_id)

    def update(self, ctx: CallContext, request: Request) -> None:
        self._update(ctx, request)

    def list_by_requester(self, ctx: CallContext, requester: str, limit: int) -> list[Request]:
        return self._query_index(ctx, GSI_REQUESTER, "requester", requester, limit)

    def list_by_status(self, ctx: CallContext, status: str, limit: int) -> list[Request]:
        return self._query_index(ctx, GSI_STATUS, "status", status, limit)

    def list_by_profile(self, ctx: CallContext, profile: str, limit: int) -> list[Request]:
        return self._query_index(ctx, GSI_PROFILE, "profile", profile, limit)


class DynamoBreakGlassStore(_DynamoStore[BreakGlassEvent]):
    not_found = BreakGlassNotFoundError
    kind = "break-glass event"

    def __init__(self, table_name: str, *, resource: Any | None = None, region: str | None = None) -> None:
        super().__init__(
            table_name,
            to_item=break_glass_to_item,
            from_item=break_glass_from_item,
            resource=resource,
            region=region,
        )

    def create(self, ctx: CallContext, event: BreakGlassEvent) -> None:
        self._create(ctx, event)

    def get(self, ctx: CallContext, event_id: str) -> BreakGlassEvent:
        return self._get(ctx, event_id)

    def update(self, ctx: CallContext, event: BreakGlassEvent) -> None:
        self._update(ctx, event)

    def list_by_invoker(self, ctx: CallContext, invoker: str, limit: int) -> list[BreakGlassEvent]:
        return self._query_index(ctx, GSI_INVOKER, "invoker", invoker, limit)

    def list_by_status(self, ctx: CallContext, status: str, limit: int) -> list[BreakGlassEvent]:
        return self._query_index(ctx, GSI_STATUS, "status", status, limit)

    def list_by_profile(self, ctx: CallContext, profile: str, limit: int) -> list[BreakGlassEvent]:
        return self._query_index(ctx, GSI_PROFILE, "profile", profile, limit)

    def get_last_by_invoker_and_profile(
        self, ctx: CallContext, invoker: str, profile: str
    ) -> BreakGlassEvent | None:
        # The profile filter applies after each page is read, so page until a hit.
        start_key: dict[str, Any] | None = None
        while True:
            ctx.check()
            kwargs: dict[str, Any] = {
                "IndexName": GSI_INVOKER,
                "KeyConditionExpression": Key("invoker").eq(invoker),
                "FilterExpression": Attr("profile").eq(profile),
                "ScanIndexForward": False,
            }
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            try:
                page = self._table().query(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise self._wrap(e, "Query:LastByInvokerProfile") from e
            items = page.get("Items", []) or []
            if items:
                return break_glass_from_item(items[0])
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return None

    def count_by_invoker_since(self, ctx: CallContext, invoker: str, since: datetime) -> int:
        return self._count_since(ctx, GSI_INVOKER, "invoker", invoker, since)

    def count_by_profile_since(self, ctx: CallContext, profile: str, since: datetime) -> int:
        return self._count_since(ctx, GSI_PROFILE, "profile", profile, since)

    def _count_since(self, ctx: CallContext, index: str, key_attr: str, value: str, since: datetime) -> int:
        total = 0
        start_key: dict[str, Any] | None = None
        while True:
            ctx.check()
            kwargs: dict[str, Any] = {
                "IndexName": index,
                "KeyConditionExpression": Key(key_attr).eq(value) & Key("created_at").gte(iso(since)),
                "Select": "COUNT",
            }
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            try:
                page = self._table().query(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise self._wrap(e, f"Query:Count:{index}") from e
            total += int(page.get("Count") or 0)
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return total


class DynamoSessionStore(_DynamoStore[ServerSession]):
    not_found = SessionNotFoundError
    exists_error = SessionExistsError
    kind = "session"

    def __init__(self, table_name: str, *, resource: Any | None = None, region: str | None = None) -> None:
        super().__init__(
            table_name,
            to_item=session_to_item,
            from_item=session_from_item,
            resource=resource,
            region=region,
        )

    def create(self, ctx: CallContext, session: ServerSession) -> None:
        self._create(ctx, session)

    def get(self, ctx: CallContext, session_id: str) -> ServerSession:
        return self._get(ctx, session_id)

    def update(self, ctx: CallContext, session: ServerSession) -> None:
        self._update(ctx, session)

    def delete(self, ctx: CallContext, session_id: str) -> None:
        ctx.check()
        try:
            self._table().delete_item(Key={"id": session_id})
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "DeleteItem") from e

    def list_by_user(self, ctx: CallContext, user: str, limit: int) -> list[ServerSession]:
        return self._query_index(ctx, GSI_USER, "user", user, limit)

    def list_by_status(self, ctx: CallContext, status: str, limit: int) -> list[ServerSession]:
        return self._query_index(ctx, GSI_STATUS, "status", status, limit)

    def list_by_profile(self, ctx: CallContext, profile: str, limit: int) -> list[ServerSession]:
        return self._query_index(ctx, GSI_PROFILE, "profile", profile, limit)

    def list_by_time_range(
        self, ctx: CallContext, start: datetime, end: datetime, limit: int
    ) -> list[ServerSession]:
        # No index on created_at; audit-style queries scan.
        cap = effective_limit(limit)
        out: list[ServerSession] = []
        start_key: dict[str, Any] | None = None
        while len(out) < cap:
            ctx.check()
            kwargs: dict[str, Any] = {"FilterExpression": Attr("created_at").between(iso(start), iso(end))}
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            try:
                page = self._table().scan(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise self._wrap(e, "Scan:TimeRange") from e
            for item in page.get("Items", []) or []:
                try:
                    out.append(session_from_item(item))
                except ValueError:
                    continue
                if len(out) >= cap:
                    break
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                break
        out.sort(key=lambda s: s.created_at, reverse=True)
        return out

    def find_active_by_server_instance(self, ctx: CallContext, server_instance_id: str) -> ServerSession | None:
        ctx.check()
        try:
            resp = self._table().query(
                IndexName=GSI_SERVER_INSTANCE,
                KeyConditionExpression=Key("server_instance_id").eq(server_instance_id),
                FilterExpression=Attr("status").eq(STATUS_ACTIVE),
                ScanIndexForward=False,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "Query:FindActive") from e
        items = resp.get("Items", []) or []
        if not items:
            return None
        return session_from_item(items[0])

    def touch(self, ctx: CallContext, session_id: str) -> None:
        ctx.check()
        now = iso(utcnow())
        try:
            self._table().update_item(
                Key={"id": session_id},
                UpdateExpression="SET last_access_at = :now, request_count = request_count + :inc, updated_at = :now",
                ConditionExpression="attribute_exists(id)",
                ExpressionAttributeValues={":now": now, ":inc": 1},
            )
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                raise SessionNotFoundError(f"{session_id}: session not found") from e
            raise self._wrap(e, "UpdateItem:Touch") from e
        except BotoCoreError as e:
            raise self._wrap(e, "UpdateItem:Touch") from e

    def get_by_source_identity(self, ctx: CallContext, source_identity: str) -> ServerSession | None:
        start_key: dict[str, Any] | None = None
        while True:
            ctx.check()
            kwargs: dict[str, Any] = {"FilterExpression": Attr("source_identity").eq(source_identity)}
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            try:
                page = self._table().scan(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise self._wrap(e, "Scan:SourceIdentity") from e
            items = page.get("Items", []) or []
            if items:
                return session_from_item(items[0])
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                return None
