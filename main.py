from typing import Optional

from fastapi import Body, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from csv_utils import detect_shape
from database import SessionLocal, unit_of_work
from models import Category, MonthlySummary, PendingTransaction, Transaction
from normalizers import format_minor_units
from periods import resolve_month
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    CommitIn,
    PendingTransactionUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
)
from services import (
    AnnualSummary,
    CategoryService,
    CommitReport,
    ImportCapacityExceeded,
    ImportService,
    NotFoundError,
    PendingTransactionService,
    SummaryService,
    TransactionService,
)

app = FastAPI(title="Budget Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _raise_for(exc: ValueError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, ImportCapacityExceeded):
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def category_payload(category: Category) -> dict[str, object]:
    return {"id": category.id, "name": category.name, "type": category.type.value}


def transaction_payload(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "description": txn.description,
        "amount": format_minor_units(txn.amount_minor),
        "amount_minor": txn.amount_minor,
        "category": txn.category.name if txn.category else None,
        "category_id": txn.category_id,
    }


def summary_payload(summary: MonthlySummary) -> dict[str, object]:
    return {
        "month": f"{summary.month_start.year:04d}-{summary.month_start.month:02d}",
        "income": format_minor_units(summary.income_minor),
        "needs": format_minor_units(summary.needs_minor),
        "wants": format_minor_units(summary.wants_minor),
        "reserves": format_minor_units(summary.reserves_minor),
        "investments": format_minor_units(summary.investments_minor),
        "closing_balance": format_minor_units(summary.closing_balance_minor),
    }


def pending_payload(pending: PendingTransaction, expired: bool) -> dict[str, object]:
    return {
        "id": pending.id,
        "date": pending.date.isoformat(),
        "kind": pending.type.value,
        "description": pending.description,
        "amount": format_minor_units(pending.amount_minor),
        "category_id": pending.category_id,
        "category": pending.category.name if pending.category else None,
        "is_duplicate": pending.is_duplicate,
        "expires_at": pending.expires_at.isoformat(),
        "expired": expired,
    }


def commit_payload(report: CommitReport) -> dict[str, object]:
    return {
        "requested": report.requested,
        "committed": report.committed,
        "failed": report.failed,
        "results": [
            {
                "id": result.id,
                "success": result.success,
                "transaction_id": result.transaction_id,
                "error": result.error,
            }
            for result in report.results
        ],
    }


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return {"items": [category_payload(c) for c in CategoryService(db).list_all()]}


@app.post("/api/categories", status_code=201)
def api_create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(payload)
    except ValueError as exc:
        _raise_for(exc)
    return category_payload(category)


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    try:
        period = resolve_month(request.query_params.get("month"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    items = TransactionService(db).list_for_month(period)
    return {"month": period.slug, "items": [transaction_payload(t) for t in items]}


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(payload)
    except ValueError as exc:
        _raise_for(exc)
    return transaction_payload(txn)


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, payload: TransactionUpdateIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update(transaction_id, payload)
    except ValueError as exc:
        _raise_for(exc)
    return transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        _raise_for(exc)


@app.get("/api/summary")
def api_summary(request: Request, db: Session = Depends(get_db)):
    try:
        period = resolve_month(request.query_params.get("month"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return summary_payload(SummaryService(db).get(period.start))


@app.post("/api/summary/recompute")
def api_recompute_summary(request: Request, db: Session = Depends(get_db)):
    try:
        period = resolve_month(request.query_params.get("month"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with unit_of_work(db):
        summary = SummaryService(db).recompute(period.start)
    return summary_payload(summary)


@app.post("/api/summary/rebuild")
def api_rebuild_summaries(db: Session = Depends(get_db)):
    return {"months": SummaryService(db).rebuild_all()}


@app.get("/api/summary/annual")
def api_annual_summary(year: int, db: Session = Depends(get_db)):
    if not 1900 <= year <= 2100:
        raise HTTPException(status_code=400, detail="Year must be between 1900 and 2100")
    annual: AnnualSummary = SummaryService(db).annual(year)
    return {
        "year": annual.year,
        "totals": {
            name.removesuffix("_minor"): format_minor_units(value)
            for name, value in annual.totals.items()
        },
        "closing_balance": format_minor_units(annual.closing_balance_minor),
        "months": [summary_payload(m) for m in annual.months],
    }


@app.post("/api/transactions/import", status_code=201)
async def api_import(file: UploadFile = File(...), db: Session = Depends(get_db)):
    try:
        shape = detect_shape(file.filename, file.content_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    content = await file.read()
    try:
        report = ImportService(db).import_file(content, shape)
    except ValueError as exc:
        _raise_for(exc)

    body = {
        "created_ids": report.created_ids,
        "stats": {
            "total": report.total,
            "valid": report.valid,
            "created": report.created,
            "duplicates": report.duplicates,
            "errors": report.error_count,
        },
        "errors": report.errors,
    }
    if report.valid == 0:
        return JSONResponse(status_code=400, content={"detail": "No valid rows", **body})
    return body


@app.get("/api/pending-transactions")
def api_pending(db: Session = Depends(get_db)):
    rows = PendingTransactionService(db).list_pending()
    return {"items": [pending_payload(p, expired) for p, expired in rows]}


@app.put("/api/pending-transactions/{pending_id}")
def api_update_pending(
    pending_id: int, payload: PendingTransactionUpdateIn, db: Session = Depends(get_db)
):
    service = PendingTransactionService(db)
    try:
        pending = service.update(pending_id, payload)
    except ValueError as exc:
        _raise_for(exc)
    return pending_payload(pending, service.is_expired(pending))


@app.delete("/api/pending-transactions/{pending_id}", status_code=204)
def api_reject_pending(pending_id: int, db: Session = Depends(get_db)):
    try:
        PendingTransactionService(db).reject(pending_id)
    except ValueError as exc:
        _raise_for(exc)


@app.post("/api/pending-transactions/{pending_id}/commit")
def api_commit_pending(
    pending_id: int,
    payload: Optional[CommitIn] = Body(None),
    db: Session = Depends(get_db),
):
    if payload is not None and "ids" in payload.model_fields_set:
        if not payload.ids:
            raise HTTPException(status_code=400, detail="Invalid IDs array")
        ids = payload.ids
    else:
        ids = [pending_id]
    report = PendingTransactionService(db).commit(ids)
    body = commit_payload(report)
    if len(report.results) == 1 and report.results[0].reason == "not_found":
        return JSONResponse(status_code=404, content=body)
    if not report.any_committed:
        return JSONResponse(status_code=400, content=body)
    return body


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
