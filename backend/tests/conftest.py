import os
import tempfile
import time

# csvchat.db は import 時に DATABASE_URL を読むため、アプリを import する前に既定値を入れておく
# （CI では PostgreSQL の URL を環境変数で渡す）
_tmpDir = tempfile.mkdtemp(prefix="csvchat-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_tmpDir, 'test.db')}")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret")
os.environ.setdefault("LLM_PROVIDER", "stub")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import inspect, text

from csvchat.chat import INTENT_SYSTEM_PROMPT, REPAIR_SYSTEM_PROMPT
from csvchat.classifier import SYSTEM_PROMPT as CLASSIFIER_SYSTEM_PROMPT
from csvchat.config import StorageConfig
from csvchat.db import engine
from csvchat.main import app, get_llm_client, get_object_storage
from csvchat.storage import LocalObjectStorage

TEST_USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def waitForDatabaseReady(timeoutSeconds: int = 30) -> None:
    """目的: テスト開始前にDB接続が可能になるまで待機し、起動レースを避ける。"""
    startTime = time.time()
    lastError: Exception | None = None

    while time.time() - startTime < timeoutSeconds:
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return
        except Exception as e:
            lastError = e
            time.sleep(0.5)

    raise RuntimeError(f"Database was not ready within {timeoutSeconds}s: {lastError}")


def makeToken(userId: str = TEST_USER_ID, secret: str | None = None) -> str:
    return jwt.encode(
        {"sub": userId, "email": f"{userId}@example.com"},
        secret or os.environ["AUTH_JWT_SECRET"],
        algorithm="HS256",
    )


class ScriptedLLM:
    """
    system prompt の種類ごとに決まった応答を返すテスト用LLM。

    値に例外インスタンスを入れるとその例外を送出する。chat は呼ばれるたびに先頭から消費する。
    """

    def __init__(self):
        self.intent = "query"
        self.preprocessSql = "SELECT * FROM t"
        self.repair = "{}"
        self.classification = "{}"
        self.chat: list = []
        self.calls: list[dict] = []

    def _answer(self, value):
        if isinstance(value, Exception):
            raise value
        return value

    def complete(self, system_prompt, messages, *, max_tokens, temperature):
        self.calls.append(
            {"system": system_prompt, "messages": list(messages), "max_tokens": max_tokens, "temperature": temperature}
        )
        if system_prompt == INTENT_SYSTEM_PROMPT:
            return self._answer(self.intent)
        if system_prompt == REPAIR_SYSTEM_PROMPT:
            return self._answer(self.repair)
        if system_prompt == CLASSIFIER_SYSTEM_PROMPT:
            return self._answer(self.classification)
        if system_prompt.startswith("You translate data preprocessing"):
            return self._answer(self.preprocessSql)
        if not self.chat:
            raise AssertionError("unexpected chat completion call")
        return self._answer(self.chat.pop(0))

    def callsTo(self, systemPrompt: str) -> list[dict]:
        return [c for c in self.calls if c["system"] == systemPrompt]

    def chatCalls(self) -> list[dict]:
        return [c for c in self.calls if c["system"].startswith("You are a data analyst assistant")]


@pytest.fixture(scope="session", autouse=True)
def ensureDatabaseReady() -> None:
    """目的: テスト全体の開始時に、DBが利用可能になるまで待機する。"""
    waitForDatabaseReady()


@pytest.fixture()
def fakeLlm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture()
def client(fakeLlm, tmp_path) -> TestClient:
    """目的: LLM とストレージを差し替えた TestClient を提供する。"""
    app.dependency_overrides[get_llm_client] = lambda: fakeLlm
    app.dependency_overrides[get_object_storage] = lambda: LocalObjectStorage(
        StorageConfig(root_dir=str(tmp_path), bucket="csv-files")
    )
    with TestClient(app) as testClient:
        yield testClient
    app.dependency_overrides.clear()


@pytest.fixture()
def authHeaders() -> dict:
    return {"Authorization": f"Bearer {makeToken()}"}


@pytest.fixture()
def otherAuthHeaders() -> dict:
    return {"Authorization": f"Bearer {makeToken(OTHER_USER_ID)}"}


@pytest.fixture()
def uploadDataset(client, authHeaders):
    """目的: フォルダ作成 -> /upload-csv -> /store-csv を通し、保存済みファイルを返すヘルパ。"""

    def _upload(csvText: str, rows: list[dict] | None = None, fileName: str = "sales.csv", requestHeaders=None) -> dict:
        folder = client.post("/folders", json={"name": "Reports"}, headers=requestHeaders or authHeaders).json()
        uploaded = client.post(
            "/upload-csv",
            json={"fileName": fileName, "description": "Monthly sales", "csvText": csvText, "folderId": folder["id"]},
            headers=requestHeaders or authHeaders,
        )
        assert uploaded.status_code == 200, uploaded.text
        body = uploaded.json()
        stored = client.post(
            "/store-csv",
            json={"fileId": body["file"]["id"], "headers": body["headers"], "data": rows or _rowsFromCsv(csvText)},
            headers=requestHeaders or authHeaders,
        )
        assert stored.status_code == 200, stored.text
        return {"folderId": folder["id"], "fileId": body["file"]["id"], "tableName": stored.json()["tableName"]}

    return _upload


def _rowsFromCsv(csvText: str) -> list[dict]:
    from csvchat.csv_parser import parse_csv, records_from_rows

    _, rows, _ = records_from_rows(parse_csv(csvText))
    return rows


@pytest.fixture(autouse=True)
def cleanDatabase() -> None:
    """目的: 各テストが独立して再現できるよう、テストごとにDBをクリーンにする。"""
    yield

    with engine.begin() as connection:
        # files -> folders の順に消す。動的テーブル（csv_*）も全て落とす
        connection.execute(text("DELETE FROM files"))
        connection.execute(text("DELETE FROM folders"))
        for tableName in inspect(connection).get_table_names():
            if tableName.startswith("csv_"):
                connection.exec_driver_sql(f'DROP TABLE IF EXISTS "{tableName}"')
