"""
リクエストボディのスキーマ

キー名はフロントエンドが送る camelCase のまま受ける。
必須項目も Optional で受け、欠けている場合は API 側で 400 を返す（422 にはしない）。
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: str
    content: Optional[str] = None
    sql: Optional[str] = None
    result: Any = None
    sqlError: Optional[str] = None
    chartData: Optional[dict] = None


class ChatQueryRequest(BaseModel):
    message: Optional[str] = None
    fileId: Optional[str] = None
    tableName: Optional[str] = None
    messages: list[ChatMessage] = Field(default_factory=list)


class UploadCsvRequest(BaseModel):
    fileName: Optional[str] = None
    description: Optional[str] = None
    csvText: Optional[str] = None
    folderId: Optional[str] = None
    aiSummary: Optional[str] = None


class StoreCsvRequest(BaseModel):
    tableName: Optional[str] = None
    headers: Optional[list[str]] = None
    data: Optional[list[dict[str, Any]]] = None
    fileId: Optional[str] = None


class DatasetRequest(BaseModel):
    headers: Optional[list[str]] = None
    rows: Optional[list[dict[str, Any]]] = None


class GenerateSummaryRequest(DatasetRequest):
    preprocessingSteps: Optional[list[str]] = None


class PreprocessRequest(DatasetRequest):
    # "name" 文字列でも {"name": ..., "currency": ...} でも受け付ける
    emailColumns: list[Any] = Field(default_factory=list)
    currencyColumns: list[Any] = Field(default_factory=list)


class FolderRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
