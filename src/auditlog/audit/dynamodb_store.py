"""DynamoDB audit adapter - document-store backend.

One item per event keyed by ``id``. Nested payloads are stored as maps
with floats converted to ``Decimal``. A numeric ``timestamp_us`` attribute
(epoch microseconds) lets scans push date bounds to the server; every
other criterion, ordering and aggregation is evaluated in-process.
"""

import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional, Sequence

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from auditlog.audit.matching import compute_stats, matches_filter, paginate
from auditlog.audit.schemas import AuditEvent, AuditStats, EventFilter, PaginatedResult, as_utc
from auditlog.audit.store import AuditAdapter
from auditlog.audit.validators import to_epoch_micros
from auditlog.common.constants import StorageConstants

logger = logging.getLogger(__name__)

_AWS_ERRORS = (ClientError, BotoCoreError)


def to_dynamo(value: Any) -> Any:
    """Recursively convert floats to Decimal for DynamoDB."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Recursively convert Decimal back to int or float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


class DynamoDBAuditAdapter(AuditAdapter):
    """Audit adapter storing one DynamoDB item per event."""

    name = "dynamodb"

    def __init__(
        self,
        table_name: Optional[str] = None,
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        self.table_name = table_name or os.environ.get("AUDIT_DYNAMODB_TABLE")
        if not self.table_name:
            raise ValueError("AUDIT_DYNAMODB_TABLE required")

        self.region = region or os.environ.get("AWS_REGION", StorageConstants.DYNAMODB_REGION)

        if aws_profile:
            session = boto3.Session(profile_name=aws_profile)
            self.dynamodb = session.resource("dynamodb", region_name=self.region, endpoint_url=endpoint_url)
        else:
            self.dynamodb = boto3.resource("dynamodb", region_name=self.region, endpoint_url=endpoint_url)

        self.table = self.dynamodb.Table(self.table_name)
        self._closed = False
        logger.info(f"DynamoDB audit store initialized: {self.table_name} ({self.region})")

    def _to_item(self, event: AuditEvent) -> Dict[str, Any]:
        item = to_dynamo(event.to_record())
        item["timestamp_us"] = to_epoch_micros(event.timestamp)
        return item

    def _to_event(self, item: Dict[str, Any]) -> AuditEvent:
        data = from_dynamo(dict(item))
        data.pop("timestamp_us", None)
        return AuditEvent.model_validate(data)

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise self._error(operation, RuntimeError("adapter is closed"))

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        self._check_open("write_batch")
        try:
            with self.table.batch_writer(overwrite_by_pkeys=["id"]) as batch:
                for event in events:
                    batch.put_item(Item=self._to_item(event))
        except _AWS_ERRORS as e:
            logger.error(f"DynamoDB write_batch failed: {e}")
            raise self._error("write_batch", e) from e

    def _scan(
        self,
        operation: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        **kwargs: Any,
    ) -> Iterator[Dict[str, Any]]:
        """Yield every item in the table within the date bounds, following pagination."""
        self._check_open(operation)
        condition = None
        if start_date is not None:
            condition = Attr("timestamp_us").gte(to_epoch_micros(as_utc(start_date)))
        if end_date is not None:
            upper = Attr("timestamp_us").lt(to_epoch_micros(as_utc(end_date)))
            condition = upper if condition is None else condition & upper
        if condition is not None:
            kwargs["FilterExpression"] = condition

        try:
            while True:
                response = self.table.scan(**kwargs)
                yield from response.get("Items", [])
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except _AWS_ERRORS as e:
            logger.error(f"DynamoDB {operation} scan failed: {e}")
            raise self._error(operation, e) from e

    def _events(self, operation: str, start_date=None, end_date=None) -> Iterator[AuditEvent]:
        for item in self._scan(operation, start_date, end_date):
            yield self._to_event(item)

    def query(self, event_filter: EventFilter) -> PaginatedResult:
        events = self._events("query", event_filter.start_date, event_filter.end_date)
        return paginate(events, event_filter)

    def count(self, event_filter: EventFilter) -> int:
        events = self._events("count", event_filter.start_date, event_filter.end_date)
        return sum(1 for e in events if matches_filter(e, event_filter))

    def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> AuditStats:
        return compute_stats(self._events("get_stats", start_date, end_date), start_date, end_date)

    def purge(self, older_than: datetime) -> int:
        self._check_open("purge")
        cutoff = to_epoch_micros(as_utc(older_than))
        ids = [
            item["id"]
            for item in self._scan(
                "purge",
                FilterExpression=Attr("timestamp_us").lt(cutoff),
                ProjectionExpression="id",
            )
        ]
        if not ids:
            return 0
        try:
            with self.table.batch_writer() as batch:
                for event_id in ids:
                    batch.delete_item(Key={"id": event_id})
        except _AWS_ERRORS as e:
            logger.error(f"DynamoDB purge failed: {e}")
            raise self._error("purge", e) from e
        logger.info(f"Purged {len(ids)} audit events from {self.table_name}")
        return len(ids)

    def health_check(self) -> bool:
        if self._closed:
            return False
        try:
            return self.table.table_status in ("ACTIVE", "UPDATING")
        except Exception as e:
            logger.warning(f"DynamoDB audit store health check failed: {e}")
            return False

    def close(self) -> None:
        self._closed = True
