import logging
import os
import time

from fastapi import Depends, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import CurrentUser, get_current_user
from .chat import ChatQueryEngine
from .classifier import classify_columns
from .config import ChatConfig, PreprocessConfig, StorageConfig, configure_logging
from .csv_parser import parse_csv, records_from_rows
from .db import engine, get_db
from .llm import LLMClient, LLMConfig, build_llm_client
from .models import FILE_STATUS_FAILED, FILE_STATUS_READY, Base, File, Folder
from .preprocessing import preprocess_dataset
from .quality import generate_data_quality_summary
from .schemas import (
    ChatQueryRequest,
    DatasetRequest,
    FolderRequest,
    GenerateSummaryRequest,
    PreprocessRequest,
    StoreCsvRequest,
    UploadCsvRequest,
)
from .storage import LocalObjectStorage, ObjectStorage, StorageError
from .table_store import TABLE_NAME_PATTERN, TableNameCollision, TableStore, TableStoreError

configure_logging()
logger = logging.getLogger(__name__)

CSV_DATA_MAX_LIMIT = 1000

app = FastAPI(title="CSV Chat Backend", version="0.1.0")

# CORS（ブラウザアクセス向け）
# 例: "http://localhost:3000,http://127.0.0.1:3000" のようにカンマ区切り
originsEnv = os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000")
allowOrigins = [o.strip() for o in originsEnv.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowOrigins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 起動時にメタデータ用テーブルが無ければ作る（本番は Alembic で管理）
Base.metadata.create_all(bind=engine)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    """目的: ボディの形式不正を 422 ではなく 400 として返す。"""
    return JSONResponse(status_code=400, content={"detail": "Invalid request body"})


@app.exception_handler(Exception)
async def unexpected_exception_handler(request, exc):
    """目的: 想定外の例外は内部情報を出さずに 500 を返し、原因はログに残す。"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---- 依存関係（テストでは dependency_overrides で差し替える） ----

def get_llm_client() -> LLMClient:
    return build_llm_client(LLMConfig.from_env())


def get_table_store() -> TableStore:
    return TableStore(engine)


def get_object_storage() -> ObjectStorage:
    return LocalObjectStorage(StorageConfig.from_env())


def get_chat_config() -> ChatConfig:
    return ChatConfig.from_env()


def get_preprocess_config() -> PreprocessConfig:
    return PreprocessConfig.from_env()


def _owned_folder(db: Session, folder_id: str, user: CurrentUser) -> Folder:
    folder = db.scalars(select(Folder).where(Folder.id == folder_id, Folder.user_id == user.id)).first()
    if folder is None:
        raise HTTPException(status_code=404, detail="Folder not found")
    return folder


def _owned_file(db: Session, file_id: str, user: CurrentUser) -> File:
    file = db.scalars(select(File).where(File.id == file_id, File.user_id == user.id)).first()
    if file is None:
        raise HTTPException(status_code=404, detail="File not found")
    return file


def _require_dataset(body: DatasetRequest, detail: str = "Missing headers or rows") -> None:
    if not body.headers or body.rows is None:
        raise HTTPException(status_code=400, detail=detail)


@app.get("/health")
def health():
    """目的: 稼働確認用のヘルスチェック結果を返す。"""
    return {"status": "ok"}


# ---- フォルダ / ファイル ----

@app.post("/folders")
def create_folder(body: FolderRequest, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    if not body.name or not body.name.strip():
        raise HTTPException(status_code=400, detail="Folder name is required")
    folder = Folder(name=body.name.strip(), description=body.description, user_id=user.id)
    db.add(folder)
    db.commit()
    db.refresh(folder)
    return folder.to_dict()


@app.get("/folders")
def list_folders(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    folders = db.scalars(
        select(Folder).where(Folder.user_id == user.id).order_by(Folder.created_at.desc())
    ).all()
    return [f.to_dict() for f in folders]


@app.patch("/folders/{folder_id}")
def update_folder(
    folder_id: str,
    body: FolderRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    folder = _owned_folder(db, folder_id, user)
    if body.name is not None:
        if not body.name.strip():
            raise HTTPException(status_code=400, detail="Folder name is required")
        folder.name = body.name.strip()
    if body.description is not None:
        folder.description = body.description
    db.commit()
    db.refresh(folder)
    return folder.to_dict()


@app.delete("/folders/{folder_id}")
def delete_folder(
    folder_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: TableStore = Depends(get_table_store),
):
    """目的: フォルダと配下のファイル（動的テーブル含む）を削除する。"""
    folder = _owned_folder(db, folder_id, user)
    for file in folder.files:
        if file.table_name:
            store.drop(file.table_name)
    db.delete(folder)
    db.commit()
    return {"success": True}


@app.get("/folders/{folder_id}/files")
def list_files(folder_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    _owned_folder(db, folder_id, user)
    files = db.scalars(
        select(File).where(File.folder_id == folder_id, File.user_id == user.id).order_by(File.created_at.desc())
    ).all()
    return [f.to_dict() for f in files]


@app.delete("/files/{file_id}")
def delete_file(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: TableStore = Depends(get_table_store),
):
    file = _owned_file(db, file_id, user)
    if file.table_name:
        store.drop(file.table_name)
    db.delete(file)
    db.commit()
    return {"success": True}


# ---- アップロード前の分析 ----

@app.post("/data-quality")
def data_quality(
    body: DatasetRequest,
    user: CurrentUser = Depends(get_current_user),
    preprocess_config: PreprocessConfig = Depends(get_preprocess_config),
):
    _require_dataset(body)
    summary = generate_data_quality_summary(
        body.headers, body.rows, low_value_ratio=preprocess_config.low_value_missing_ratio
    )
    return summary.to_dict()


@app.post("/generate-summary")
def generate_summary(
    body: GenerateSummaryRequest,
    user: CurrentUser = Depends(get_current_user),
    llm: LLMClient = Depends(get_llm_client),
):
    """目的: ヘッダとサンプル行からAI要約・PII列・通貨列を返す（出力は助言扱い）。"""
    _require_dataset(body)
    classification = classify_columns(
        body.headers, body.rows, llm, preprocessing_steps=body.preprocessingSteps
    )
    return classification.to_dict()


@app.post("/preprocess")
def preprocess(
    body: PreprocessRequest,
    user: CurrentUser = Depends(get_current_user),
    preprocess_config: PreprocessConfig = Depends(get_preprocess_config),
):
    _require_dataset(body)
    ratio = preprocess_config.low_value_missing_ratio
    headers, rows, report = preprocess_dataset(
        body.headers,
        body.rows,
        email_columns=body.emailColumns,
        currency_columns=body.currencyColumns,
        low_value_ratio=ratio,
    )
    summary = generate_data_quality_summary(headers, rows, low_value_ratio=ratio)
    return {
        "headers": headers,
        "rows": rows,
        "summary": summary.to_dict(),
        "steps": report.steps(),
        "report": report.to_dict(),
    }


# ---- 保存 ----

@app.post("/upload-csv")
def upload_csv(
    body: UploadCsvRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
):
    """目的: 元CSVをストレージへ保存し、ファイルのメタデータを作る（テーブル作成は /store-csv）。"""
    if not body.csvText or not body.csvText.strip():
        raise HTTPException(status_code=400, detail="CSV content is empty")
    if not body.fileName or not body.folderId:
        raise HTTPException(status_code=400, detail="Missing required fields")

    _owned_folder(db, body.folderId, user)
    headers, rows, dropped = records_from_rows(parse_csv(body.csvText))
    if dropped:
        logger.info("Dropped %d malformed rows from %s", dropped, body.fileName)

    safeName = os.path.basename(body.fileName)
    filePath = f"{user.id}/{body.folderId}/{int(time.time() * 1000)}_{safeName}"
    try:
        storage.upload(filePath, body.csvText.encode("utf-8"))
    except StorageError as e:
        logger.error("Failed to upload CSV: %s", e)
        raise HTTPException(status_code=500, detail="Failed to upload CSV")

    try:
        file = File(
            name=body.fileName,
            description=body.description,
            folder_id=body.folderId,
            user_id=user.id,
            storage_path=filePath,
            original_headers=headers,
            ai_summary=body.aiSummary or None,
        )
        db.add(file)
        db.commit()
        db.refresh(file)
    except SQLAlchemyError as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=f"Failed to save file metadata: {type(e).__name__}")

    return {"success": True, "file": file.to_dict(), "headers": headers, "rowCount": len(rows)}


@app.post("/store-csv")
def store_csv(
    body: StoreCsvRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: TableStore = Depends(get_table_store),
):
    """
    目的: 最終的な行データを一意な動的テーブルへ保存し、ファイルと紐付ける。

    テーブル作成後に行の投入が失敗した場合は、テーブルを削除しファイルを failed にして 500 を返す。
    """
    if not body.fileId or not body.headers or body.data is None:
        raise HTTPException(status_code=400, detail="Missing required fields")

    if body.tableName and not TABLE_NAME_PATTERN.match(body.tableName):
        raise HTTPException(status_code=400, detail="Invalid table name")

    file = _owned_file(db, body.fileId, user)
    if file.table_name:
        raise HTTPException(status_code=409, detail="File already has a stored table")

    try:
        created = store.create_text_table(body.headers, table_name=body.tableName)
    except TableNameCollision:
        raise HTTPException(status_code=409, detail="Table name already exists")
    except TableStoreError as e:
        logger.error("Failed to create table for file %s: %s", file.id, e)
        raise HTTPException(status_code=500, detail="Failed to create table")

    try:
        rowCount = store.insert(created.name, created.columns, body.data, owner_id=user.id)
    except TableStoreError as e:
        logger.error("Insert failed for %s, dropping table: %s", created.name, e)
        try:
            store.drop(created.name)
        except (TableStoreError, SQLAlchemyError) as dropError:
            logger.error("Failed to drop %s after insert failure: %s", created.name, dropError)
        file.status = FILE_STATUS_FAILED
        db.commit()
        raise HTTPException(status_code=500, detail="Failed to store CSV data")

    file.table_name = created.name
    file.status = FILE_STATUS_READY
    file.access_policy = created.policy.to_dict()
    db.commit()

    return {"success": True, "tableName": created.name, "rowCount": rowCount, "columns": created.columns}


@app.get("/csv-data")
def csv_data(
    tableName: str | None = None,
    page: int = 1,
    limit: int = 50,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: TableStore = Depends(get_table_store),
):
    if not tableName:
        raise HTTPException(status_code=400, detail="Table name is required")

    # 範囲外のページ指定はエラーにせず丸める
    page = max(page, 1)
    limit = min(max(limit, 1), CSV_DATA_MAX_LIMIT)

    file = db.scalars(select(File).where(File.table_name == tableName, File.user_id == user.id)).first()
    if file is None:
        raise HTTPException(status_code=404, detail="File not found")

    try:
        data, total = store.fetch_page(tableName, owner_id=user.id, offset=(page - 1) * limit, limit=limit)
        columns = [c["name"] for c in store.describe(tableName) if c["name"] not in ("id", "created_at")]
    except TableStoreError:
        raise HTTPException(status_code=404, detail="Table not found")

    return {
        "data": data,
        "columns": columns,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": -(-total // limit),
        },
    }


# ---- チャット ----

@app.post("/chat-query")
def chat_query(
    body: ChatQueryRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: TableStore = Depends(get_table_store),
    llm: LLMClient = Depends(get_llm_client),
    chat_config: ChatConfig = Depends(get_chat_config),
):
    """目的: 自然言語の質問を SQL に変換・実行し、説明・結果・グラフ設定を返す。"""
    if not body.message or not body.fileId or not body.tableName:
        raise HTTPException(status_code=400, detail="Missing required fields")

    file = _owned_file(db, body.fileId, user)
    if file.table_name != body.tableName:
        raise HTTPException(status_code=404, detail="File not found")

    chat = ChatQueryEngine(store, llm, chat_config)
    try:
        turn = chat.run(
            message=body.message,
            table_name=body.tableName,
            file_name=file.name,
            file_description=file.description,
            history=body.messages,
            owner_id=user.id,
        )
    except TableStoreError:
        raise HTTPException(status_code=404, detail="Table not found")

    return turn.to_dict()
