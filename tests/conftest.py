"""
conftest.py - общие фикстуры тестов лаунчера

- store: LedgerStore во временной папке
- catalog: подменяемый каталог инстансов
- access: InstanceAccess поверх store и catalog
- FakeHttpSession: подмена requests.Session для сервера проверки кодов
"""

from typing import List, Optional

import pytest
import requests

from instance_catalog import Instance
from ledger_store import LedgerStore
from unlock_ledger import InstanceAccess


class FakeCatalog:
    """Каталог в памяти. remote: что вернёт сервер при принудительном обновлении."""

    def __init__(self, instances: Optional[List[Instance]] = None):
        self.instances = list(instances or [])
        self.remote: Optional[List[Instance]] = None
        self.forced_updates = 0

    def get_instance_list(self) -> List[Instance]:
        return list(self.instances)

    def force_update(self) -> List[Instance]:
        self.forced_updates += 1
        if self.remote is not None:
            self.instances = list(self.remote)
        return list(self.instances)


class FakeResponse:
    def __init__(self, payload=None, status_code: int = 200, invalid_json: bool = False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeHttpSession:
    """Записывает запросы и отвечает заранее заданными ответами по очереди."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class Clock:
    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def store(tmp_path):
    return LedgerStore(tmp_path / "db")


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def access(store, catalog):
    return InstanceAccess(store, catalog)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")
