import logging
from datetime import date
from typing import Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import HouseholdContext, get_and_verify_household, require_writer
from config import get_settings
from database import get_db, init_db
from errors import BillsError, InvalidRequestError, NotFoundError, http_status_for
from legacy_compat import LegacyBillIn, LegacyBillService
from models import (
    AutopayRule,
    AutopayRun,
    BillClassification,
    BillOccurrence,
    BillOccurrenceAllocation,
    BillPaymentEvent,
    BillTemplate,
    BillType,
    Notification,
    OccurrenceStatus,
)
from notifications import NotificationService
from scheduler import SchedulerManager
from schemas import (
    AllocationsIn,
    AutopayRuleIn,
    AutopayRunIn,
    BillMatchIn,
    BillTemplateIn,
    BillTemplatePatch,
    OccurrenceFilters,
    PayOccurrenceIn,
    SkipOccurrenceIn,
)
from services import (
    AllocationService,
    AutopayService,
    BillMatchService,
    OccurrenceService,
    PaymentService,
    TemplateService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Household Bills")


def ok(data: object, status_code: int = 200, **extra: object) -> JSONResponse:
    content = {"data": data}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


@app.exception_handler(BillsError)
async def bills_error_handler(request: Request, exc: BillsError) -> JSONResponse:
    return JSONResponse(status_code=http_status_for(exc), content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def rule_dto(rule: Optional[AutopayRule]) -> Optional[dict[str, object]]:
    if rule is None:
        return None
    return {
        "id": rule.id,
        "template_id": rule.template_id,
        "is_enabled": rule.is_enabled,
        "pay_from_account_id": rule.pay_from_account_id,
        "amount_type": rule.amount_type.value,
        "fixed_amount_cents": rule.fixed_amount_cents,
        "days_before_due": rule.days_before_due,
    }


def template_dto(template: BillTemplate) -> dict[str, object]:
    return {
        "id": template.id,
        "household_id": template.household_id,
        "created_by_user_id": template.created_by_user_id,
        "name": template.name,
        "description": template.description,
        "is_active": template.is_active,
        "bill_type": template.bill_type.value,
        "classification": template.classification.value,
        "classification_subcategory": template.classification_subcategory,
        "recurrence_type": template.recurrence_type.value,
        "recurrence_due_day": template.recurrence_due_day,
        "recurrence_due_weekday": template.recurrence_due_weekday,
        "recurrence_specific_due_date": _iso(template.recurrence_specific_due_date),
        "recurrence_start_month": template.recurrence_start_month,
        "default_amount_cents": template.default_amount_cents,
        "is_variable_amount": template.is_variable_amount,
        "amount_tolerance_bps": template.amount_tolerance_bps,
        "category_id": template.category_id,
        "merchant_id": template.merchant_id,
        "payment_account_id": template.payment_account_id,
        "linked_liability_account_id": template.linked_liability_account_id,
        "auto_mark_paid": template.auto_mark_paid,
        "notes": template.notes,
        "debt_enabled": template.debt_enabled,
        "debt_original_balance_cents": template.debt_original_balance_cents,
        "debt_remaining_balance_cents": template.debt_remaining_balance_cents,
        "debt_interest_apr_bps": template.debt_interest_apr_bps,
        "budget_period_assignment": template.budget_period_assignment,
        "autopay": rule_dto(template.autopay_rule),
        "created_at": _iso(template.created_at),
        "updated_at": _iso(template.updated_at),
    }


def allocation_dto(allocation: BillOccurrenceAllocation) -> dict[str, object]:
    return {
        "id": allocation.id,
        "occurrence_id": allocation.occurrence_id,
        "template_id": allocation.template_id,
        "period_number": allocation.period_number,
        "allocated_amount_cents": allocation.allocated_amount_cents,
        "paid_amount_cents": allocation.paid_amount_cents,
        "is_paid": allocation.is_paid,
        "payment_event_id": allocation.payment_event_id,
    }


def occurrence_dto(occurrence: BillOccurrence) -> dict[str, object]:
    template = occurrence.template
    return {
        "id": occurrence.id,
        "template_id": occurrence.template_id,
        "household_id": occurrence.household_id,
        "due_date": _iso(occurrence.due_date),
        "status": occurrence.status.value,
        "amount_due_cents": occurrence.amount_due_cents,
        "amount_paid_cents": occurrence.amount_paid_cents,
        "amount_remaining_cents": occurrence.amount_remaining_cents,
        "actual_amount_cents": occurrence.actual_amount_cents,
        "paid_date": _iso(occurrence.paid_date),
        "last_transaction_id": occurrence.last_transaction_id,
        "days_late": occurrence.days_late,
        "late_fee_cents": occurrence.late_fee_cents,
        "is_manual_override": occurrence.is_manual_override,
        "budget_period_override": occurrence.budget_period_override,
        "notes": occurrence.notes,
        "template": {
            "id": template.id,
            "name": template.name,
            "bill_type": template.bill_type.value,
            "classification": template.classification.value,
            "recurrence_type": template.recurrence_type.value,
            "is_active": template.is_active,
        },
        "allocations": [allocation_dto(a) for a in occurrence.allocations],
    }


def event_dto(event: BillPaymentEvent) -> dict[str, object]:
    return {
        "id": event.id,
        "occurrence_id": event.occurrence_id,
        "template_id": event.template_id,
        "transaction_id": event.transaction_id,
        "amount_cents": event.amount_cents,
        "principal_cents": event.principal_cents,
        "interest_cents": event.interest_cents,
        "balance_before_cents": event.balance_before_cents,
        "balance_after_cents": event.balance_after_cents,
        "payment_date": _iso(event.payment_date),
        "payment_method": event.payment_method.value,
        "source_account_id": event.source_account_id,
        "idempotency_key": event.idempotency_key,
        "notes": event.notes,
        "created_at": _iso(event.created_at),
    }


def run_dto(run: AutopayRun) -> dict[str, object]:
    return {
        "id": run.id,
        "run_date": _iso(run.run_date),
        "run_type": run.run_type.value,
        "status": run.status.value,
        "processed_count": run.processed_count,
        "success_count": run.success_count,
        "failed_count": run.failed_count,
        "skipped_count": run.skipped_count,
        "total_amount_cents": run.total_amount_cents,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
    }


def notification_dto(notification: Notification) -> dict[str, object]:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "priority": notification.priority.value,
        "entity_type": notification.entity_type,
        "entity_id": notification.entity_id,
        "is_read": notification.is_read,
        "created_at": _iso(notification.created_at),
    }


def summary_dto(summary: dict[str, object]) -> dict[str, object]:
    return {
        key: value.isoformat() if isinstance(value, date) else value
        for key, value in summary.items()
    }


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidRequestError(f"{name} must be an integer") from exc


def _date_param(request: Request, name: str) -> Optional[date]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidRequestError(f"{name} must be an ISO date") from exc


def _enum_param(request: Request, name: str, enum_cls):
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return enum_cls(raw)
    except ValueError as exc:
        raise InvalidRequestError(f"Invalid {name}: {raw}") from exc


def _bool_param(request: Request, name: str) -> Optional[bool]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    return raw.strip().lower() in {"1", "true", "yes"}


def occurrence_filters_from_request(request: Request) -> OccurrenceFilters:
    statuses: list[OccurrenceStatus] = []
    for raw in request.query_params.getlist("status"):
        for part in raw.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                statuses.append(OccurrenceStatus(part))
            except ValueError as exc:
                raise InvalidRequestError(f"Invalid status: {part}") from exc
    period = request.query_params.get("period") or None
    if period not in (None, "this_month", "last_month", "next_month", "custom"):
        raise InvalidRequestError(f"Invalid period: {period}")
    return OccurrenceFilters(
        status=statuses or None,
        start=_date_param(request, "from") or _date_param(request, "start"),
        end=_date_param(request, "to") or _date_param(request, "end"),
        period=period,
        bill_type=_enum_param(request, "bill_type", BillType),
        limit=_int_param(request, "limit", 50),
        offset=_int_param(request, "offset", 0),
    )


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    init_db()
    if settings.scheduler_enabled:
        app.state.scheduler = SchedulerManager()
        app.state.scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()


@app.get("/health")
def health():
    return {"data": {"status": "ok"}}


@app.get("/bills")
def legacy_list_bills(
    request: Request,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    limit = _int_param(request, "limit", 50)
    offset = _int_param(request, "offset", 0)
    statuses = [
        part.strip()
        for raw in request.query_params.getlist("status")
        for part in raw.split(",")
        if part.strip()
    ]
    rows, total = LegacyBillService(db, ctx.household_id, ctx.user_id).list(
        is_active=_bool_param(request, "isActive"),
        limit=limit,
        offset=offset,
        statuses=statuses,
    )
    return ok(rows, total=total, limit=limit, offset=offset)


@app.post("/bills")
def legacy_create_bill(
    payload: LegacyBillIn,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    bill = LegacyBillService(db, ctx.household_id, ctx.user_id).create(payload)
    return ok(bill, status_code=201)


@app.get("/bills/templates")
def list_templates(
    request: Request,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    limit = _int_param(request, "limit", 50)
    offset = _int_param(request, "offset", 0)
    templates, total = TemplateService(db, ctx.household_id).list(
        is_active=_bool_param(request, "is_active"),
        bill_type=_enum_param(request, "bill_type", BillType),
        classification=_enum_param(request, "classification", BillClassification),
        limit=limit,
        offset=offset,
    )
    return ok([template_dto(t) for t in templates], total=total)


@app.post("/bills/templates")
def create_template(
    payload: BillTemplateIn,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    template = TemplateService(db, ctx.household_id, ctx.user_id).create(payload)
    return ok(template_dto(template), status_code=201)


@app.get("/bills/templates/{template_id}")
def get_template(
    template_id: int,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    return ok(template_dto(TemplateService(db, ctx.household_id).get(template_id)))


@app.patch("/bills/templates/{template_id}")
def update_template(
    template_id: int,
    payload: BillTemplatePatch,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    template = TemplateService(db, ctx.household_id, ctx.user_id).update(
        template_id, payload
    )
    return ok(template_dto(template))


@app.delete("/bills/templates/{template_id}")
def delete_template(
    template_id: int,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    TemplateService(db, ctx.household_id, ctx.user_id).delete(template_id)
    return ok({"deleted": True})


@app.get("/bills/templates/{template_id}/autopay")
def get_autopay_rule(
    template_id: int,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    rule = AutopayService(db, ctx.household_id).get_rule(template_id)
    if rule is None:
        raise NotFoundError("Autopay rule not found")
    return ok(rule_dto(rule))


@app.put("/bills/templates/{template_id}/autopay")
def put_autopay_rule(
    template_id: int,
    payload: AutopayRuleIn,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    rule = AutopayService(db, ctx.household_id, ctx.user_id).upsert_rule(
        template_id, payload
    )
    return ok(rule_dto(rule))


@app.delete("/bills/templates/{template_id}/autopay")
def delete_autopay_rule(
    template_id: int,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    AutopayService(db, ctx.household_id, ctx.user_id).delete_rule(template_id)
    return ok({"deleted": True})


@app.get("/bills/occurrences")
def list_occurrences(
    request: Request,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    filters = occurrence_filters_from_request(request)
    result = OccurrenceService(db, ctx.household_id).list(filters)
    period = result["period"]
    return ok(
        {
            "items": [occurrence_dto(o) for o in result["items"]],
            "total": result["total"],
            "period": {
                "slug": period.slug,
                "start": period.start.isoformat(),
                "end": period.end.isoformat(),
            },
            "summary": summary_dto(result["summary"]),
        }
    )


@app.get("/bills/summary")
def bills_summary(
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    summary = OccurrenceService(db, ctx.household_id).dashboard_summary()
    return ok(summary_dto(summary))


@app.get("/bills/occurrences/{occurrence_id}")
def get_occurrence(
    occurrence_id: int,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    return ok(occurrence_dto(OccurrenceService(db, ctx.household_id).get(occurrence_id)))


@app.delete("/bills/occurrences/{occurrence_id}")
def delete_occurrence(
    occurrence_id: int,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    OccurrenceService(db, ctx.household_id, ctx.user_id).delete(occurrence_id)
    return ok({"deleted": True})


@app.post("/bills/occurrences/{occurrence_id}/pay")
def pay_occurrence(
    occurrence_id: int,
    payload: PayOccurrenceIn,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    result = PaymentService(db, ctx.household_id, ctx.user_id).pay_occurrence(
        occurrence_id, payload
    )
    return ok(
        {
            "occurrence": occurrence_dto(result.occurrence),
            "payment": event_dto(result.event),
            "allocations": [allocation_dto(a) for a in result.allocations],
            "replayed": result.replayed,
        }
    )


@app.post("/bills/occurrences/{occurrence_id}/skip")
def skip_occurrence(
    occurrence_id: int,
    payload: Optional[SkipOccurrenceIn] = Body(default=None),
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    notes = payload.notes if payload else None
    occurrence = OccurrenceService(db, ctx.household_id, ctx.user_id).skip(
        occurrence_id, notes
    )
    return ok(occurrence_dto(occurrence))


@app.post("/bills/occurrences/{occurrence_id}/reset")
def reset_occurrence(
    occurrence_id: int,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    occurrence = OccurrenceService(db, ctx.household_id, ctx.user_id).reset(
        occurrence_id
    )
    return ok(occurrence_dto(occurrence))


@app.post("/bills/occurrences/{occurrence_id}/autopay")
def autopay_occurrence(
    occurrence_id: int,
    request: Request,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    dry_run = bool(_bool_param(request, "dryRun"))
    attempt = AutopayService(db, ctx.household_id, ctx.user_id).attempt_single(
        occurrence_id, dry_run=dry_run
    )
    return ok(attempt.to_dict())


@app.get("/bills/occurrences/{occurrence_id}/payments")
def list_payments(
    occurrence_id: int,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    events = OccurrenceService(db, ctx.household_id).payments(occurrence_id)
    return ok([event_dto(e) for e in events])


@app.get("/bills/occurrences/{occurrence_id}/allocations")
def list_allocations(
    occurrence_id: int,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    allocations = AllocationService(db, ctx.household_id).list(occurrence_id)
    return ok([allocation_dto(a) for a in allocations])


@app.put("/bills/occurrences/{occurrence_id}/allocations")
def replace_allocations(
    occurrence_id: int,
    payload: AllocationsIn,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    allocations = AllocationService(db, ctx.household_id, ctx.user_id).replace(
        occurrence_id, payload.allocations
    )
    return ok([allocation_dto(a) for a in allocations])


@app.delete("/bills/occurrences/{occurrence_id}/allocations")
def clear_allocations(
    occurrence_id: int,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    AllocationService(db, ctx.household_id, ctx.user_id).clear(occurrence_id)
    return ok({"deleted": True})


@app.delete("/bills/occurrences/{occurrence_id}/allocations/{allocation_id}")
def delete_allocation(
    occurrence_id: int,
    allocation_id: int,
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    AllocationService(db, ctx.household_id, ctx.user_id).delete(
        occurrence_id, allocation_id
    )
    return ok({"deleted": True})


@app.post("/bills/autopay/run")
def run_autopay(
    payload: Optional[AutopayRunIn] = Body(default=None),
    ctx: HouseholdContext = Depends(require_writer),
    db: Session = Depends(get_db),
):
    payload = payload or AutopayRunIn()
    result = AutopayService(db, ctx.household_id, ctx.user_id).run(
        run_date=payload.run_date, run_type=payload.run_type, dry_run=payload.dry_run
    )
    return ok(
        {
            "run": run_dto(result.run),
            "attempts": [a.to_dict() for a in result.attempts],
        }
    )


@app.get("/bills/autopay/runs")
def list_autopay_runs(
    request: Request,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    runs = AutopayService(db, ctx.household_id).list_runs(
        _int_param(request, "limit", 20)
    )
    return ok([run_dto(r) for r in runs])


@app.post("/bills/match")
def match_bill(
    payload: BillMatchIn,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    match = BillMatchService(db, ctx.household_id).find_match(
        payload.description, payload.amount_cents, payload.date, payload.min_confidence
    )
    if match is None:
        return ok(None)
    return ok(
        {
            "occurrence": occurrence_dto(match.occurrence),
            "confidence": match.confidence,
            "name_score": match.name_score,
            "amount_score": match.amount_score,
            "date_score": match.date_score,
        }
    )


@app.get("/notifications")
def list_notifications(
    request: Request,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    notifications = NotificationService(db, ctx.household_id).list(
        ctx.user_id,
        unread_only=bool(_bool_param(request, "unread")),
        limit=_int_param(request, "limit", 50),
    )
    return ok([notification_dto(n) for n in notifications])


@app.post("/notifications/{notification_id}/read")
def read_notification(
    notification_id: int,
    ctx: HouseholdContext = Depends(get_and_verify_household),
    db: Session = Depends(get_db),
):
    notification = NotificationService(db, ctx.household_id).mark_read(
        ctx.user_id, notification_id
    )
    return ok(notification_dto(notification))
