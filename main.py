import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from csrf import generate_csrf_token, validate_csrf_token
from database import get_db
from models import PatternKind, PatternStatus
from scheduler import SchedulerManager
from schemas import (
    AlertCandidateOut,
    AlertGenerationOut,
    AlertListOut,
    AlertOut,
    AlertUpdateIn,
    BillPayIn,
    BillPaymentOut,
    BulkTransactionsIn,
    DetectedPatternOut,
    DetectionOut,
    PatternOut,
    PatternStatusIn,
    ProjectedOccurrenceOut,
    ProjectionOut,
    ProjectionSummaryOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AlertService,
    BillService,
    DetectionResult,
    DetectionService,
    PatternNotFound,
    PatternService,
    TransactionService,
    get_current_user_id,
)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Recurwatch", version=APP_VERSION)

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def csrf_protect(x_csrf_token: str = Header(default="")) -> None:
    if not validate_csrf_token(x_csrf_token, user_id=get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def _detection_out(result: DetectionResult) -> DetectionOut:
    return DetectionOut(
        kind=result.kind,
        detected=result.detected_count,
        saved=result.saved_count,
        patterns=[DetectedPatternOut.model_validate(p) for p in result.patterns],
        message=result.message,
    )


def _run_detection(db: Session, kind: PatternKind, label: str) -> DetectionResult:
    try:
        return DetectionService(db).detect(kind)
    except Exception as exc:
        logging.exception(f"Error detecting {label}")
        raise HTTPException(
            status_code=500, detail=f"Failed to detect {label}"
        ) from exc


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"csrf_token": generate_csrf_token(get_current_user_id())}


@app.get("/api/transactions", response_model=list[TransactionOut])
def api_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
):
    offset = (page - 1) * limit
    return TransactionService(db).list(limit=limit, offset=offset)


@app.post(
    "/api/transactions",
    response_model=TransactionOut,
    status_code=201,
    dependencies=[Depends(csrf_protect)],
)
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    service = TransactionService(db)
    txn = service.create(data)
    scheduler_manager.submit_alert_generation(service.user_id, source="transaction_create")
    return txn


@app.post(
    "/api/transactions/bulk",
    status_code=201,
    dependencies=[Depends(csrf_protect)],
)
def api_bulk_transactions(data: BulkTransactionsIn, db: Session = Depends(get_db)):
    service = TransactionService(db)
    txns = service.create_many(data.transactions)
    scheduler_manager.submit_alert_generation(service.user_id, source="bulk_import")
    return {"imported": len(txns)}


@app.post(
    "/api/subscriptions/detect",
    response_model=DetectionOut,
    dependencies=[Depends(csrf_protect)],
)
def api_detect_subscriptions(db: Session = Depends(get_db)):
    result = _run_detection(db, PatternKind.subscription, "subscriptions")
    scheduler_manager.submit_alert_generation(
        get_current_user_id(), source="subscription_detect"
    )
    return _detection_out(result)


@app.post(
    "/api/bills/detect",
    response_model=DetectionOut,
    dependencies=[Depends(csrf_protect)],
)
def api_detect_bills(db: Session = Depends(get_db)):
    return _detection_out(_run_detection(db, PatternKind.bill, "bills"))


@app.post(
    "/api/recurring/detect",
    response_model=DetectionOut,
    dependencies=[Depends(csrf_protect)],
)
def api_detect_recurring(db: Session = Depends(get_db)):
    return _detection_out(
        _run_detection(db, PatternKind.recurring, "recurring transactions")
    )


@app.get("/api/patterns", response_model=list[PatternOut])
def api_patterns(
    kind: Optional[PatternKind] = None,
    status: Optional[PatternStatus] = None,
    db: Session = Depends(get_db),
):
    return PatternService(db).list(kind=kind, status=status)


@app.post(
    "/api/patterns/{pattern_id}/status",
    response_model=PatternOut,
    dependencies=[Depends(csrf_protect)],
)
def api_pattern_status(
    pattern_id: int, data: PatternStatusIn, db: Session = Depends(get_db)
):
    try:
        return PatternService(db).set_status(pattern_id, data.status)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/subscriptions/upcoming", response_model=list[PatternOut])
def api_upcoming_subscriptions(
    days: Optional[int] = Query(None, ge=0, le=366),
    limit: int = Query(5, ge=1, le=50),
    db: Session = Depends(get_db),
):
    return PatternService(db).upcoming(days=days, limit=limit)


@app.get("/api/recurring/projections", response_model=ProjectionOut)
def api_recurring_projections(
    days: Optional[int] = Query(None, ge=0, le=366),
    db: Session = Depends(get_db),
):
    occurrences, summary = PatternService(db).project(days=days)
    return ProjectionOut(
        occurrences=[ProjectedOccurrenceOut.model_validate(o) for o in occurrences],
        summary=ProjectionSummaryOut(**summary),
    )


@app.post(
    "/api/bills/{bill_id}/pay",
    response_model=BillPaymentOut,
    dependencies=[Depends(csrf_protect)],
)
def api_pay_bill(
    bill_id: int, data: Optional[BillPayIn] = None, db: Session = Depends(get_db)
):
    data = data or BillPayIn()
    try:
        payment = BillService(db).pay(
            bill_id, create_transaction=data.create_transaction
        )
    except PatternNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return BillPaymentOut(
        bill=PatternOut.model_validate(payment.bill),
        next_bill=(
            PatternOut.model_validate(payment.next_bill) if payment.next_bill else None
        ),
        transaction=(
            TransactionOut.model_validate(payment.transaction)
            if payment.transaction
            else None
        ),
    )


@app.post(
    "/api/alerts/generate",
    response_model=AlertGenerationOut,
    dependencies=[Depends(csrf_protect)],
)
def api_generate_alerts(db: Session = Depends(get_db)):
    try:
        result = AlertService(db).generate()
    except Exception as exc:
        logging.exception("Error generating alerts")
        raise HTTPException(status_code=500, detail="Failed to generate alerts") from exc
    return AlertGenerationOut(
        generated=result.generated,
        saved=result.saved,
        alerts=[AlertCandidateOut.model_validate(a) for a in result.alerts],
    )


@app.get("/api/alerts", response_model=AlertListOut)
def api_alerts(
    limit: Optional[int] = Query(None, ge=1, le=200),
    db: Session = Depends(get_db),
):
    service = AlertService(db)
    return AlertListOut(
        alerts=[AlertOut.model_validate(a) for a in service.list(limit=limit)],
        unread_count=service.unread_count(),
    )


@app.patch(
    "/api/alerts/{alert_id}",
    response_model=AlertOut,
    dependencies=[Depends(csrf_protect)],
)
def api_update_alert(alert_id: int, data: AlertUpdateIn, db: Session = Depends(get_db)):
    try:
        return AlertService(db).set_read(alert_id, data.is_read)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def main() -> None:
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
