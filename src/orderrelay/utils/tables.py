"""
Key-value tables behind the order store and the correlation index.

Two backends share one contract:

- DynamoTable → DynamoDB through the low-level boto3 client
- MemoryTable → a locked dict, for local runs and tests

``update`` merges: only the given attributes are written. A dotted name
(``"fulfillments.F1"``) writes one key inside an existing map attribute.
With ``expect`` the write is a compare-and-set: it only happens if every
expected attribute currently holds the given value (None means absent),
which is what keeps writers in separate processes from overwriting each
other.
"""
import copy
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from orderrelay.errors import StoreUnavailable
from orderrelay.utils.logger import get_logger

logger = get_logger("tables")


class Table(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, key: str, item: Dict[str, Any]) -> None:
        """Unconditional write of the whole item."""

    @abstractmethod
    def put_new(self, key: str, item: Dict[str, Any]) -> bool:
        """Write only if ``key`` is absent. Returns False if it already existed."""

    @abstractmethod
    def update(self, key: str, fields: Dict[str, Any], expect: Optional[Dict[str, Any]] = None) -> bool:
        """Merge ``fields``. Returns False if an ``expect`` condition did not hold."""

    @abstractmethod
    def scan(self, **equals: Any) -> Iterator[Dict[str, Any]]:
        """Yield items whose attributes equal every keyword given."""


class MemoryTable(Table):
    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            item = self._items.get(key)
            return copy.deepcopy(item) if item is not None else None

    def put(self, key, item):
        with self._lock:
            self._items[key] = copy.deepcopy(item)

    def put_new(self, key, item):
        with self._lock:
            if key in self._items:
                return False
            self._items[key] = copy.deepcopy(item)
            return True

    def update(self, key, fields, expect=None):
        with self._lock:
            if expect:
                current = self._items.get(key) or {}
                if any(current.get(name) != value for name, value in expect.items()):
                    return False
            item = self._items.setdefault(key, {})
            for name, value in fields.items():
                target = item
                *parents, leaf = name.split(".")
                for part in parents:
                    target = target.setdefault(part, {})
                target[leaf] = copy.deepcopy(value)
            return True

    def scan(self, **equals):
        with self._lock:
            snapshot = [copy.deepcopy(i) for i in self._items.values()]
        for item in snapshot:
            if all(item.get(k) == v for k, v in equals.items()):
                yield item


def _to_dynamo(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


class DynamoTable(Table):
    """
    One DynamoDB table with a string partition key ``pk``.

    Any ClientError/BotoCoreError other than a failed put_new condition is
    raised as StoreUnavailable.
    """

    def __init__(self, table_name: str, client=None, key_name: str = "pk"):
        self.table_name = table_name
        self.key_name = key_name
        self.client = client or boto3.client("dynamodb")
        self._ser = TypeSerializer()
        self._deser = TypeDeserializer()

    def _key(self, key: str) -> Dict[str, Any]:
        return {self.key_name: {"S": key}}

    def _serialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._ser.serialize(_to_dynamo(v)) for k, v in item.items()}

    def _deserialize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        item = {k: _from_dynamo(self._deser.deserialize(v)) for k, v in raw.items()}
        item.pop(self.key_name, None)
        return item

    def _fail(self, op: str, key: Optional[str], error: Exception) -> StoreUnavailable:
        logger.error(
            "tables.dynamo_error",
            extra={"table": self.table_name, "op": op, "key": key, "error": str(error)},
        )
        return StoreUnavailable(f"{op} on {self.table_name} failed: {error}")

    def get(self, key):
        try:
            resp = self.client.get_item(
                TableName=self.table_name, Key=self._key(key), ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            raise self._fail("get", key, e)
        raw = resp.get("Item")
        return self._deserialize(raw) if raw else None

    def put(self, key, item):
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item={**self._serialize(item), **self._key(key)},
            )
        except (ClientError, BotoCoreError) as e:
            raise self._fail("put", key, e)

    def put_new(self, key, item):
        try:
            self.client.put_item(
                TableName=self.table_name,
                Item={**self._serialize(item), **self._key(key)},
                ConditionExpression="attribute_not_exists(#pk)",
                ExpressionAttributeNames={"#pk": self.key_name},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise self._fail("put_new", key, e)
        except BotoCoreError as e:
            raise self._fail("put_new", key, e)
        return True

    def update(self, key, fields, expect=None):
        if not fields:
            return True
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        assignments = []
        for i, (name, value) in enumerate(fields.items()):
            path = []
            for j, part in enumerate(name.split(".")):
                placeholder = f"#n{i}_{j}"
                names[placeholder] = part
                path.append(placeholder)
            values[f":v{i}"] = self._ser.serialize(_to_dynamo(value))
            assignments.append(f"{'.'.join(path)} = :v{i}")

        params: Dict[str, Any] = {}
        if expect:
            clauses = []
            for i, (name, value) in enumerate(expect.items()):
                names[f"#c{i}"] = name
                if value is None:
                    clauses.append(f"attribute_not_exists(#c{i})")
                else:
                    values[f":c{i}"] = self._ser.serialize(_to_dynamo(value))
                    clauses.append(f"#c{i} = :c{i}")
            params["ConditionExpression"] = " AND ".join(clauses)

        try:
            self.client.update_item(
                TableName=self.table_name,
                Key=self._key(key),
                UpdateExpression="SET " + ", ".join(assignments),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                **params,
            )
        except ClientError as e:
            if expect and e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise self._fail("update", key, e)
        except BotoCoreError as e:
            raise self._fail("update", key, e)
        return True

    def scan(self, **equals):
        params: Dict[str, Any] = {"TableName": self.table_name}
        if equals:
            names, values, clauses = {}, {}, []
            for i, (name, value) in enumerate(equals.items()):
                names[f"#a{i}"] = name
                values[f":e{i}"] = self._ser.serialize(_to_dynamo(value))
                clauses.append(f"#a{i} = :e{i}")
            params.update(
                FilterExpression=" AND ".join(clauses),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        try:
            for page in self.client.get_paginator("scan").paginate(**params):
                for raw in page.get("Items", []):
                    yield self._deserialize(raw)
        except (ClientError, BotoCoreError) as e:
            raise self._fail("scan", None, e)
