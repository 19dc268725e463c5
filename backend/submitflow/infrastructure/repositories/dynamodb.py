from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from submitflow.domain.errors import StoreUnavailableError
from submitflow.domain.models.async_request import (
    AsyncRequestRecord,
    AsyncRequestStatus,
    ErrorDescriptor,
    utcnow,
)
from submitflow.domain.providers.interfaces import AsyncRequestStore

logger = logging.getLogger(__name__)

_CONDITION_FAILED = "ConditionalCheckFailedException"


class DynamoDbAsyncRequestStore(AsyncRequestStore):
    """Request store backed by a DynamoDB table keyed on (hashedSub, requestId).

    Expiry relies on the table's native TTL attribute ``ttl``; since DynamoDB deletes
    expired items lazily, reads filter them out explicitly.
    """

    def __init__(self, *, table_name: str, client: Any = None, region: str | None = None):
        self.table_name = table_name
        self._region = region
        self._client_cached = client

    def create_if_absent(
        self, record: AsyncRequestRecord
    ) -> tuple[AsyncRequestRecord, bool]:
        try:
            self._client().put_item(
                TableName=self.table_name,
                Item=self._to_item(record),
                ConditionExpression="attribute_not_exists(requestId) OR #ttl <= :now",
                ExpressionAttributeNames={"#ttl": "ttl"},
                ExpressionAttributeValues={":now": {"N": str(_epoch(utcnow()))}},
            )
            return record, True
        except ClientError as exc:
            if _error_code(exc) != _CONDITION_FAILED:
                raise self._unavailable("create_if_absent", exc) from exc
        except BotoCoreError as exc:
            raise self._unavailable("create_if_absent", exc) from exc
        existing = self.get(record.hashed_caller_id, record.request_id)
        return (existing or record), False

    def conditional_update(
        self,
        record: AsyncRequestRecord,
        *,
        expected_status: AsyncRequestStatus,
        expected_attempt: int,
    ) -> bool:
        try:
            self._client().put_item(
                TableName=self.table_name,
                Item=self._to_item(record),
                ConditionExpression="#status = :status AND #attempt = :attempt AND #ttl > :now",
                ExpressionAttributeNames={
                    "#status": "status",
                    "#attempt": "attempt",
                    "#ttl": "ttl",
                },
                ExpressionAttributeValues={
                    ":status": {"S": expected_status.value},
                    ":attempt": {"N": str(expected_attempt)},
                    ":now": {"N": str(_epoch(utcnow()))},
                },
            )
        except ClientError as exc:
            if _error_code(exc) == _CONDITION_FAILED:
                return False
            raise self._unavailable("conditional_update", exc) from exc
        except BotoCoreError as exc:
            raise self._unavailable("conditional_update", exc) from exc
        return True

    def get(self, hashed_caller_id: str, request_id: str) -> Optional[AsyncRequestRecord]:
        try:
            response = self._client().get_item(
                TableName=self.table_name,
                Key={"hashedSub": {"S": hashed_caller_id}, "requestId": {"S": request_id}},
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise self._unavailable("get", exc) from exc
        item = response.get("Item")
        if not item:
            return None
        record = self._to_domain(item)
        if record.is_expired():
            return None
        return record

    def purge_expired(self, *, now: Optional[datetime] = None) -> int:
        # The table's TTL setting deletes items; nothing to sweep here.
        logger.debug("DynamoDB TTL handles expiry", extra={"table": self.table_name})
        return 0

    def find_stalled(
        self, *, updated_before: datetime, limit: int = 100
    ) -> List[AsyncRequestRecord]:
        # ISO-8601 UTC strings sort chronologically, so updatedAt compares as a string.
        params: Dict[str, Any] = {
            "TableName": self.table_name,
            "FilterExpression": "#status = :processing AND updatedAt <= :before AND #ttl > :now",
            "ExpressionAttributeNames": {"#status": "status", "#ttl": "ttl"},
            "ExpressionAttributeValues": {
                ":processing": {"S": AsyncRequestStatus.PROCESSING.value},
                ":before": {"S": updated_before.isoformat()},
                ":now": {"N": str(_epoch(utcnow()))},
            },
        }
        stalled: List[AsyncRequestRecord] = []
        start_key = None
        try:
            while len(stalled) < limit:
                page = dict(params, ExclusiveStartKey=start_key) if start_key else params
                response = self._client().scan(**page)
                stalled.extend(self._to_domain(item) for item in response.get("Items", []))
                start_key = response.get("LastEvaluatedKey")
                if not start_key:
                    break
        except (BotoCoreError, ClientError) as exc:
            raise self._unavailable("find_stalled", exc) from exc
        stalled.sort(key=lambda record: record.updated_at)
        return stalled[:limit]

    # helpers -----------------------------------------------------------

    def _client(self):
        if self._client_cached is None:
            session = boto3.session.Session()
            self._client_cached = session.client("dynamodb", region_name=self._region)
        return self._client_cached

    def _to_item(self, record: AsyncRequestRecord) -> Dict[str, Any]:
        expires_at = record.expires_at or record.updated_at
        item: Dict[str, Any] = {
            "hashedSub": {"S": record.hashed_caller_id},
            "requestId": {"S": record.request_id},
            "status": {"S": record.status.value},
            "attempt": {"N": str(record.attempt)},
            "createdAt": {"S": record.created_at.isoformat()},
            "updatedAt": {"S": record.updated_at.isoformat()},
            "ttl": {"N": str(_epoch(expires_at))},
            "ttl_datestamp": {"S": expires_at.isoformat()},
        }
        if record.result is not None:
            item["result"] = {"S": json.dumps(record.result)}
        if record.error is not None:
            item["error"] = {"S": json.dumps(record.error.as_dict())}
        return item

    def _to_domain(self, item: Dict[str, Any]) -> AsyncRequestRecord:
        result = item.get("result")
        error = item.get("error")
        return AsyncRequestRecord(
            hashed_caller_id=item["hashedSub"]["S"],
            request_id=item["requestId"]["S"],
            status=AsyncRequestStatus(item["status"]["S"]),
            attempt=int(item.get("attempt", {}).get("N", "0")),
            result=json.loads(result["S"]) if result else None,
            error=ErrorDescriptor.from_dict(json.loads(error["S"])) if error else None,
            created_at=datetime.fromisoformat(item["createdAt"]["S"]),
            updated_at=datetime.fromisoformat(item["updatedAt"]["S"]),
            expires_at=datetime.fromtimestamp(int(item["ttl"]["N"]), tz=timezone.utc),
        )

    def _unavailable(self, operation: str, exc: Exception) -> StoreUnavailableError:
        logger.error(
            "DynamoDB request store operation failed",
            extra={"operation": operation, "table": self.table_name, "error": str(exc)},
        )
        return StoreUnavailableError(
            f"Async request store unavailable during {operation}: {exc}",
            operation=operation,
        )


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def from_env() -> DynamoDbAsyncRequestStore:
    table_name = os.getenv("ASYNC_REQUESTS_TABLE_NAME", "")
    if not table_name:
        raise ValueError("ASYNC_REQUESTS_TABLE_NAME is required for the dynamodb store")
    return DynamoDbAsyncRequestStore(
        table_name=table_name, region=os.getenv("AWS_REGION", "eu-west-2")
    )
