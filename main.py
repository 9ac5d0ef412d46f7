import os
import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic import ValidationError as SchemaValidationError
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

import audit
import auth
import config
import database
import insights
import invites
import payments
import pricing
import refunds
import request_templates
import service_requests
import transactions
import users
import webhooks
from auth import AuthContext, get_auth_context, require_admin
from database import to_public
from errors import AppError, Forbidden, NotFound, ValidationError

config.configure_logging()
logger = logging.getLogger(__name__)

# App setup
app = FastAPI(title="Your Spell Caster API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_missing_env = config.validate_environment()


# Error handling
@app.exception_handler(AppError)
def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


def _first_error(errors: List[Dict[str, Any]]) -> str:
    if not errors:
        return "Invalid request"
    err = errors[0]
    loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form")]
    field = ".".join(loc)
    return f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid request")


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _first_error(exc.errors())})


@app.exception_handler(SchemaValidationError)
def schema_validation_handler(request: Request, exc: SchemaValidationError):
    return JSONResponse(status_code=400, content={"error": _first_error(exc.errors())})


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Models for requests
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenResponse(ApiModel):
    access_token: str
    token_type: str = "bearer"


class RegisterRequest(ApiModel):
    email: EmailStr
    password: str
    name: Optional[str] = None
    phone: Optional[str] = None


class LoginRequest(ApiModel):
    email: EmailStr
    password: str


class ServiceRequestCreate(ApiModel):
    service_name: str
    service_type: str
    description: str
    client_notes: Optional[str] = None
    payment_intent_id: Optional[str] = None


class ServiceRequestUpdate(ApiModel):
    status: Optional[str] = None
    status_update: Optional[str] = None
    priority: Optional[str] = None
    admin_notes: Optional[str] = None
    assigned_to: Optional[str] = None
    ritual_steps: Optional[List[Dict[str, Any]]] = None


class BulkAction(ApiModel):
    action: str
    request_ids: List[str]
    status: Optional[str] = None
    priority: Optional[str] = None
    admin_id: Optional[str] = None
    admin_notes: Optional[str] = None


class CreateIntentRequest(ApiModel):
    service_id: str
    service_name: str
    amount: Optional[float] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    quote_id: Optional[str] = None
    service_request_id: Optional[str] = None


class QuoteCreate(ApiModel):
    user_id: str
    service_id: str
    quoted_price: float
    notes: Optional[str] = None
    valid_days: Optional[int] = None


class QuoteAction(ApiModel):
    action: str
    new_price: Optional[float] = None
    new_notes: Optional[str] = None
    extend_validity_days: Optional[int] = None
    rejection_reason: Optional[str] = None


class RefundCreate(ApiModel):
    payment_intent_id: Optional[str] = None
    reason: Optional[str] = None
    user_message: Optional[str] = None


class RefundReview(ApiModel):
    status: str
    admin_notes: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_method: Optional[str] = None


class RefundProcess(ApiModel):
    refund_amount: Optional[int] = None
    reason: Optional[str] = None


class InviteCreate(ApiModel):
    email: str
    role: str = "admin"
    custom_message: Optional[str] = None
    expires_in_days: Optional[int] = None


class InviteAccept(ApiModel):
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None


class ProfileUpdate(ApiModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    image: Optional[str] = None


class UserUpdate(ProfileUpdate):
    action: Optional[str] = None
    reason: Optional[str] = None
    admin_notes: Optional[str] = None


class RoleUpdate(ApiModel):
    role: str


class TemplateCreate(ApiModel):
    name: str
    service_type: str
    service_name: str
    description: str
    category: str
    default_ritual_steps: List[Dict[str, Any]] = []
    estimated_price: Optional[float] = None
    estimated_days: Optional[int] = None
    priority: str = "medium"
    tags: List[str] = []


class TemplateUpdate(ApiModel):
    name: Optional[str] = None
    service_type: Optional[str] = None
    service_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    default_ritual_steps: Optional[List[Dict[str, Any]]] = None
    estimated_price: Optional[float] = None
    estimated_days: Optional[int] = None
    priority: Optional[str] = None
    tags: Optional[List[str]] = None
    active: Optional[bool] = None


class InsightCreate(ApiModel):
    title: str
    content: str
    preview_text: Optional[str] = None
    frequency: str = "daily"
    tags: List[str] = []
    locale: Optional[str] = None


class InsightUpdate(ApiModel):
    title: Optional[str] = None
    content: Optional[str] = None
    preview_text: Optional[str] = None
    frequency: Optional[str] = None
    tags: Optional[List[str]] = None
    locale: Optional[str] = None
    active: Optional[bool] = None


def _page(limit: int, skip: int, total: int) -> Dict[str, int]:
    return {"limit": limit, "skip": skip, "total": total}


def _public_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [to_public(d) for d in docs]


# Routes
@app.get("/")
def root():
    return {"name": "Your Spell Caster API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "missing_env": _missing_env,
    }
    try:
        db = database.get_db()
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set" if config.MONGODB_URI else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest):
    user = users.create_user(payload.email, payload.password, name=payload.name, phone=payload.phone)
    return TokenResponse(access_token=auth.create_token(str(user["_id"]), user.get("role", "user")))


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    user = users.authenticate(payload.email, payload.password)
    return TokenResponse(access_token=auth.create_token(str(user["_id"]), user.get("role", "user")))


@app.get("/me")
def me(ctx: AuthContext = Depends(get_auth_context)):
    user = users.get_user_by_id(ctx.user_id)
    out = to_public(user)
    out["isAdmin"] = ctx.is_admin
    return out


# Services catalog
@app.get("/api/services")
def list_services(category: Optional[str] = None):
    services = pricing.get_services_by_category(category) if category else pricing.get_all_services()
    return {"services": [to_public(s) for s in services], "count": len(services)}


# Service requests
@app.post("/api/service-requests", status_code=201)
def create_service_request(payload: ServiceRequestCreate, ctx: AuthContext = Depends(get_auth_context)):
    doc = service_requests.create_service_request(
        ctx.user_id,
        payload.service_name,
        payload.service_type,
        payload.description,
        client_notes=payload.client_notes,
        payment_intent_id=payload.payment_intent_id,
    )
    return to_public(doc)


@app.get("/api/service-requests")
def list_service_requests(
    limit: int = Query(50, ge=1),
    skip: int = Query(0, ge=0),
    status: Optional[str] = None,
    priority: Optional[str] = None,
    service_type: Optional[str] = Query(None, alias="serviceType"),
    assigned_to: Optional[str] = Query(None, alias="assignedTo"),
    search: Optional[str] = None,
    ctx: AuthContext = Depends(get_auth_context),
):
    limit = min(limit, 100)
    if ctx.is_admin:
        filters = {
            "status": status,
            "priority": priority,
            "service_type": service_type,
            "assigned_to": assigned_to,
            "search": search,
        }
        docs = service_requests.get_admin_service_requests(filters, limit, skip)
        total = service_requests.get_service_request_count(filters=filters)
    else:
        docs = service_requests.get_user_service_requests(ctx.user_id, limit, skip)
        total = service_requests.get_service_request_count(user_id=ctx.user_id)
    return {"data": _public_list(docs), "pagination": _page(limit, skip, total)}


@app.post("/api/service-requests/bulk")
def bulk_update_service_requests(payload: BulkAction, ctx: AuthContext = Depends(require_admin)):
    if not payload.request_ids:
        raise ValidationError("Invalid request body: action and requestIds required")
    updated_count = 0
    if payload.action == "update-status":
        if payload.status not in service_requests.REQUEST_STATUSES:
            raise ValidationError("Invalid status")
        note = payload.admin_notes or f"Bulk status update to {payload.status}"
        for request_id in payload.request_ids:
            try:
                if service_requests.update_service_request_status(request_id, payload.status, ctx.user_id, note):
                    updated_count += 1
            except AppError as e:
                logger.warning("Bulk status update skipped %s: %s", request_id, e.message)
        message = f"Updated {updated_count} request{'s' if updated_count != 1 else ''} to {payload.status}"
    elif payload.action == "update-priority":
        if payload.priority not in service_requests.PRIORITIES:
            raise ValidationError("Invalid priority")
        for request_id in payload.request_ids:
            if service_requests.update_request_priority(request_id, payload.priority, ctx.user_id):
                updated_count += 1
        message = f"Updated priority to {payload.priority} for {updated_count} request{'s' if updated_count != 1 else ''}"
    elif payload.action == "assign-admin":
        if not payload.admin_id:
            raise ValidationError("adminId required")
        for request_id in payload.request_ids:
            if service_requests.assign_service_request(request_id, payload.admin_id, ctx.user_id):
                updated_count += 1
        message = f"Assigned {updated_count} request{'s' if updated_count != 1 else ''} to admin"
    else:
        raise ValidationError("Invalid action")
    return {"success": True, "message": message, "updatedCount": updated_count}


@app.get("/api/service-requests/analytics/metrics")
def service_request_metrics(timeframe: int = Query(30 * 24, ge=1), ctx: AuthContext = Depends(require_admin)):
    analytics = service_requests.get_service_request_analytics(timeframe)
    by_service = [to_public(row) for row in analytics.pop("requests_by_service")]
    by_status = analytics.pop("requests_by_status")
    analytics = {database.camelize(k): v for k, v in analytics.items()}
    analytics.update({"requestsByService": by_service, "requestsByStatus": by_status})
    return {
        "analytics": analytics,
        "pendingByPriority": service_requests.get_pending_requests_by_priority(),
        "timeframeHours": timeframe,
    }


@app.get("/api/service-requests/{request_id}")
def get_service_request(request_id: str, ctx: AuthContext = Depends(get_auth_context)):
    doc = service_requests.get_service_request(request_id)
    if not doc:
        raise NotFound("Service request not found")
    auth.ensure_owner_or_admin(ctx, doc.get("user_id"))
    return to_public(doc)


@app.put("/api/service-requests/{request_id}")
def update_service_request(request_id: str, payload: ServiceRequestUpdate, ctx: AuthContext = Depends(require_admin)):
    doc = service_requests.get_service_request(request_id)
    if not doc:
        raise NotFound("Service request not found")
    service_requests.validate_admin_update(doc, payload.status, payload.priority, payload.ritual_steps)
    if payload.status:
        doc = service_requests.update_service_request_status(request_id, payload.status, ctx.user_id, payload.status_update)
    if payload.priority:
        doc = service_requests.update_request_priority(request_id, payload.priority, ctx.user_id)
    if payload.admin_notes is not None:
        doc = service_requests.add_admin_notes(request_id, payload.admin_notes, ctx.user_id)
    if payload.assigned_to:
        doc = service_requests.assign_service_request(request_id, payload.assigned_to, ctx.user_id)
    if payload.ritual_steps is not None:
        doc = service_requests.update_ritual_steps(request_id, payload.ritual_steps, ctx.user_id)
    return to_public(doc)


@app.post("/api/service-requests/{request_id}/upload")
def upload_ritual_photos(
    request_id: str,
    step_index: int = Form(..., alias="stepIndex"),
    files: Optional[List[UploadFile]] = File(None),
    ctx: AuthContext = Depends(require_admin),
):
    if not files:
        raise ValidationError("No files provided")
    doc = service_requests.get_service_request(request_id)
    if not doc:
        raise NotFound("Service request not found")
    steps = doc.get("ritual_steps") or []
    if step_index < 0 or step_index >= len(steps):
        raise ValidationError("Invalid step index")

    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    uploaded_urls = []
    for f in files:
        name = os.path.basename(f.filename or "upload")
        filename = f"{request_id}_step{step_index}_{int(time.time() * 1000)}_{name}"
        with open(os.path.join(config.UPLOAD_DIR, filename), "wb") as out:
            out.write(f.file.read())
        uploaded_urls.append(f"{config.UPLOAD_URL_PREFIX}/{filename}")

    updated = service_requests.append_step_photos(request_id, step_index, uploaded_urls)
    if updated is None:
        raise NotFound("Service request not found")
    audit.record(ctx.user_id, "service_request.upload", "service_request", request_id, None, {"step_index": step_index, "urls": uploaded_urls})
    return {"success": True, "data": to_public(updated), "uploadedUrls": uploaded_urls}


# Payments
@app.post("/api/payments/create-intent")
def create_payment_intent(payload: CreateIntentRequest, ctx: AuthContext = Depends(get_auth_context)):
    amount = payload.amount
    service_id = payload.service_id
    if payload.quote_id:
        quote = pricing.get_price_quote(payload.quote_id)
        if not quote or quote.get("user_id") != ctx.user_id:
            raise NotFound("Quote not found")
        if quote.get("status") != "accepted":
            raise ValidationError("Quote must be accepted before payment")
        amount = quote["quoted_price"]
        service_id = quote["service_id"]
    if amount is None:
        raise ValidationError("Missing required fields: serviceId, serviceName, amount")
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    if payload.service_request_id:
        request_doc = service_requests.get_service_request(payload.service_request_id)
        if not request_doc:
            raise NotFound("Service request not found")
        auth.ensure_owner_or_admin(ctx, request_doc.get("user_id"))

    amount_cents = payments.convert_to_stripe_amount(amount)
    metadata = dict(payload.metadata or {})
    metadata.update({
        "serviceId": service_id,
        "serviceName": payload.service_name,
        "userId": ctx.user_id,
        "userEmail": ctx.email,
        "userName": ctx.name or "Anonymous",
    })
    if payload.quote_id:
        metadata["quoteId"] = payload.quote_id
    if payload.service_request_id:
        metadata["serviceRequestId"] = payload.service_request_id

    result = payments.create_payment_intent(
        amount_cents,
        config.DEFAULT_CURRENCY,
        payload.description or f"Payment for {payload.service_name}",
        metadata,
        receipt_email=ctx.email or None,
    ).raise_for_error(400)

    transactions.record_payment_intent(
        result.payment_intent_id,
        ctx.user_id,
        amount_cents,
        config.DEFAULT_CURRENCY,
        service_id=service_id,
        service_name=payload.service_name,
        service_request_id=payload.service_request_id,
        quote_id=payload.quote_id,
    )
    if payload.service_request_id:
        service_requests.link_payment_intent(payload.service_request_id, result.payment_intent_id)
    return {"success": True, "clientSecret": result.client_secret, "paymentIntentId": result.payment_intent_id}


@app.get("/api/payments/pending")
def pending_payments(ctx: AuthContext = Depends(get_auth_context)):
    docs = transactions.get_user_payments(ctx.user_id, status="pending")
    total = sum(d.get("amount") or 0 for d in docs)
    return {
        "success": True,
        "payments": _public_list(docs),
        "totalAmount": total,
        "totalAmountFormatted": payments.format_payment_amount(total),
        "count": len(docs),
    }


@app.post("/api/payments/webhook")
async def stripe_webhook(request: Request):
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise ValidationError("Missing stripe-signature header")
    body = await request.body()
    event = payments.verify_webhook_signature(body, signature)
    if event is None:
        return JSONResponse(status_code=401, content={"error": "Invalid webhook signature"})
    return webhooks.dispatch(event)


# Price quotes
@app.get("/api/payments/quotes")
def list_quotes(
    view: Optional[str] = None,
    stats: Optional[bool] = None,
    limit: int = Query(20, ge=1, le=100),
    ctx: AuthContext = Depends(get_auth_context),
):
    if view == "admin":
        require_admin(ctx)
        if stats:
            return to_public(pricing.get_quote_stats())
        quotes = pricing.get_pending_quotes(limit)
    else:
        quotes = pricing.get_user_quotes(ctx.user_id)
    return {"quotes": _public_list(quotes), "count": len(quotes)}


@app.post("/api/payments/quotes", status_code=201)
def create_quote(payload: QuoteCreate, ctx: AuthContext = Depends(require_admin)):
    service = pricing.get_service_config(payload.service_id)
    quote = pricing.create_price_quote(
        payload.user_id,
        payload.service_id,
        service["name"],
        payload.quoted_price,
        notes=payload.notes,
        valid_days=payload.valid_days or 7,
        created_by=ctx.user_id,
    )
    return {
        "success": True,
        "message": "Price quote created for user. They can view and accept it in the app or via WhatsApp/Messenger.",
        "quote": to_public(quote),
    }


@app.get("/api/payments/quotes/{quote_id}")
def get_quote(quote_id: str, ctx: AuthContext = Depends(get_auth_context)):
    quote = pricing.get_price_quote(quote_id)
    if not quote:
        raise NotFound("Quote not found")
    auth.ensure_owner_or_admin(ctx, quote.get("user_id"))
    out = to_public(quote)
    out["installmentOptions"] = [to_public(o) for o in pricing.get_installment_options(quote["service_id"], quote["quoted_price"])]
    return {"quote": out}


@app.put("/api/payments/quotes/{quote_id}")
def update_quote(quote_id: str, payload: QuoteAction, ctx: AuthContext = Depends(get_auth_context)):
    quote = pricing.get_price_quote(quote_id)
    if not quote:
        raise NotFound("Quote not found")
    if payload.action == "accept":
        auth.ensure_owner_or_admin(ctx, quote.get("user_id"))
        updated = pricing.accept_price_quote(quote_id)
        message = "Quote accepted! You can now proceed to payment."
    elif payload.action == "reject":
        auth.ensure_owner_or_admin(ctx, quote.get("user_id"))
        updated = pricing.reject_price_quote(quote_id, payload.rejection_reason)
        message = "Quote rejected. Please contact the healer to discuss pricing."
    elif payload.action == "update":
        if not ctx.is_admin:
            raise Forbidden("Only admins can update quotes")
        updated = pricing.update_price_quote(
            quote_id,
            new_price=payload.new_price,
            new_notes=payload.new_notes,
            extend_validity_days=payload.extend_validity_days,
            actor_id=ctx.user_id,
        )
        message = "Quote updated. User will be notified."
    else:
        raise ValidationError("Invalid action. Use: accept, reject, or update")
    return {"success": True, "message": message, "quote": to_public(updated)}


# Refunds
def _resolve_payment_for_refund(ctx: AuthContext, payment_intent_id: str) -> Dict[str, Any]:
    already = refunds.refunded_total(payment_intent_id)
    payment = transactions.get_by_payment_intent(payment_intent_id)
    if payment is not None:
        if payment.get("user_id") != ctx.user_id:
            raise NotFound("Payment not found")
        if payment.get("status") not in ("succeeded", "partially_refunded"):
            raise ValidationError("Only completed payments can be refunded")
        remaining = transactions.refundable_amount(payment, already)
        if remaining <= 0:
            raise ValidationError("This payment has already been fully refunded")
        return {
            "transaction_id": str(payment["_id"]),
            "amount": remaining,
            "currency": payment.get("currency") or config.DEFAULT_CURRENCY,
            "service_name": payment.get("service_name") or "Spiritual Service",
            "service_type": payment.get("service_id") or "general",
        }
    intent = payments.get_payment_intent(payment_intent_id)
    if intent is None or intent["metadata"].get("userId") != ctx.user_id:
        raise NotFound("Payment not found")
    if intent.get("status") != "succeeded":
        raise ValidationError("Only completed payments can be refunded")
    remaining = (intent.get("amount") or 0) - already
    if remaining <= 0:
        raise ValidationError("This payment has already been fully refunded")
    return {
        "transaction_id": None,
        "amount": remaining,
        "currency": intent.get("currency") or config.DEFAULT_CURRENCY,
        "service_name": intent["metadata"].get("serviceName") or "Spiritual Service",
        "service_type": intent["metadata"].get("serviceId") or "general",
    }


@app.post("/api/payments/refund-request", status_code=201)
def create_refund_request(payload: RefundCreate, ctx: AuthContext = Depends(get_auth_context)):
    if not payload.payment_intent_id or not payload.reason:
        raise ValidationError("Missing required fields: paymentIntentId and reason")
    if payload.reason not in refunds.REFUND_REASONS:
        raise ValidationError("Invalid refund reason provided")
    if payload.user_message and len(payload.user_message) > refunds.USER_MESSAGE_MAX_LENGTH:
        raise ValidationError(f"User message exceeds maximum length of {refunds.USER_MESSAGE_MAX_LENGTH} characters")
    if refunds.find_open_request(ctx.user_id, payload.payment_intent_id):
        raise ValidationError("A refund request for this payment is already open")

    payment = _resolve_payment_for_refund(ctx, payload.payment_intent_id)
    refund = refunds.create_refund_request(
        ctx.user_id,
        payload.payment_intent_id,
        payment["amount"],
        payment["service_name"],
        payment["service_type"],
        payload.reason,
        payload.user_message,
        transaction_id=payment["transaction_id"],
        currency=payment["currency"],
    )
    return {
        "success": True,
        "message": "Refund request submitted successfully",
        "refundRequestId": str(refund["_id"]),
        "refundRequest": to_public(refund),
    }


@app.get("/api/payments/refund-request")
def list_my_refund_requests(limit: int = Query(10, ge=1), ctx: AuthContext = Depends(get_auth_context)):
    docs = refunds.get_user_refund_requests(ctx.user_id, min(limit, 100))
    return {"success": True, "refundRequests": _public_list(docs), "count": len(docs)}


@app.get("/api/payments/refund-request/admin/pending")
def list_pending_refund_requests(
    limit: int = Query(50, ge=1, le=100),
    status: Optional[str] = None,
    ctx: AuthContext = Depends(require_admin),
):
    if status:
        docs = refunds.get_refund_requests_by_status(status, limit)
    else:
        docs = refunds.get_pending_refund_requests(limit)
    return {"success": True, "refundRequests": _public_list(docs), "count": len(docs)}


@app.get("/api/payments/refund-request/{refund_id}")
def get_refund_request(refund_id: str, ctx: AuthContext = Depends(require_admin)):
    doc = refunds.get_refund_request(refund_id)
    if not doc:
        raise NotFound("Refund request not found")
    return {"success": True, "refundRequest": to_public(doc)}


@app.put("/api/payments/refund-request/{refund_id}")
def review_refund_request(refund_id: str, payload: RefundReview, ctx: AuthContext = Depends(require_admin)):
    updated = refunds.update_refund_request(
        refund_id,
        ctx.user_id,
        payload.status,
        admin_notes=payload.admin_notes,
        refund_amount=payload.refund_amount,
        refund_method=payload.refund_method,
    )
    return {"success": True, "message": f"Refund request {payload.status}", "refundRequest": to_public(updated)}


@app.post("/api/payments/refund-request/{refund_id}/process")
def process_refund_request(refund_id: str, payload: Optional[RefundProcess] = None, ctx: AuthContext = Depends(require_admin)):
    payload = payload or RefundProcess()
    outcome = refunds.process_refund(refund_id, ctx.user_id, payload.refund_amount, payload.reason)
    result = outcome["result"]
    return {
        "success": True,
        "message": "Refund processed successfully with Stripe",
        "refundId": result.refund_id,
        "amount": result.amount,
        "currency": result.currency,
        "status": result.status,
        "refundRequest": to_public(outcome["refund_request"]),
    }


# Admin invites
@app.get("/api/admin/invites")
def list_admin_invites(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    skip: int = Query(0, ge=0),
    ctx: AuthContext = Depends(require_admin),
):
    docs = invites.list_invites(status, limit, skip)
    return {
        "invites": [invites.public_invite(d) for d in docs],
        "stats": invites.get_invite_stats(),
        "pagination": {"limit": limit, "skip": skip},
    }


@app.post("/api/admin/invites", status_code=201)
def create_admin_invite(payload: InviteCreate, ctx: AuthContext = Depends(require_admin)):
    expires_in = (payload.expires_in_days or 7) * 24 * 60 * 60
    invite = invites.create_admin_invite(payload.email, payload.role, ctx.user_id, payload.custom_message, expires_in)
    public = invites.public_invite(invite)
    return {"success": True, "message": "Invite created", "invite": public, "inviteLink": public["inviteLink"]}


@app.get("/api/admin/invites/{token}")
def get_admin_invite(token: str):
    invite = invites.get_invite_by_token(token)
    if not invite or invite.get("status") != "pending" or invite["expires_at"] <= database.utcnow():
        raise NotFound("Invalid or expired invite token")
    return {"email": invite["email"], "role": invite["role"], "expiresAt": invite["expires_at"]}


@app.delete("/api/admin/invites/{token}")
def revoke_admin_invite(token: str, ctx: AuthContext = Depends(require_admin)):
    invites.revoke_admin_invite(token, ctx.user_id)
    return {"success": True, "message": "Invite revoked"}


@app.post("/api/admin/invites/{token}/accept")
def accept_admin_invite(token: str, payload: InviteAccept):
    outcome = invites.accept_admin_invite(token, payload.email, payload.name, payload.password)
    user = outcome["user"]
    return {
        "success": True,
        "message": "Invite accepted successfully",
        "user": {
            "id": str(user["_id"]),
            "email": user["email"],
            "name": user.get("name"),
            "role": user.get("role"),
        },
    }


@app.get("/api/admin/audit-log")
def list_audit_log(
    target_type: Optional[str] = Query(None, alias="targetType"),
    target_id: Optional[str] = Query(None, alias="targetId"),
    actor_id: Optional[str] = Query(None, alias="actorId"),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    ctx: AuthContext = Depends(require_admin),
):
    docs = audit.list_entries(target_type, target_id, actor_id, limit, skip)
    total = audit.count_entries(target_type, target_id, actor_id)
    return {"entries": _public_list(docs), "pagination": _page(limit, skip, total)}


# Users
@app.get("/api/users")
def list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    skip: int = Query(0, ge=0),
    ctx: AuthContext = Depends(require_admin),
):
    if search:
        docs = users.search_users(search, limit)
        return {"users": _public_list(docs), "count": len(docs)}
    docs = users.list_users(limit, skip, role)
    return {"users": _public_list(docs), "pagination": _page(limit, skip, users.count_users(role))}


@app.get("/api/users/me")
def get_my_profile(ctx: AuthContext = Depends(get_auth_context)):
    return {"user": to_public(users.get_user_by_id(ctx.user_id))}


@app.put("/api/users/me")
@app.patch("/api/users/me")
def update_my_profile(payload: ProfileUpdate, ctx: AuthContext = Depends(get_auth_context)):
    user = users.update_user_profile(ctx.user_id, payload.model_dump())
    return {"success": True, "user": to_public(user)}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, ctx: AuthContext = Depends(get_auth_context)):
    auth.ensure_owner_or_admin(ctx, user_id)
    user = users.get_user_by_id(user_id)
    if not user:
        raise NotFound("User not found")
    return {"user": to_public(user)}


@app.put("/api/users/{user_id}")
@app.patch("/api/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, ctx: AuthContext = Depends(get_auth_context)):
    auth.ensure_owner_or_admin(ctx, user_id)
    if (payload.action or payload.admin_notes is not None) and not ctx.is_admin:
        raise Forbidden("Forbidden - Admin access required")

    user = None
    if payload.action == "suspend":
        user = users.suspend_user(user_id, payload.reason, ctx.user_id)
    elif payload.action == "reactivate":
        user = users.reactivate_user(user_id, ctx.user_id)
    elif payload.action:
        raise ValidationError("Invalid action. Use: suspend or reactivate")
    if payload.admin_notes is not None:
        user = users.set_admin_notes(user_id, payload.admin_notes, ctx.user_id)
    profile = payload.model_dump(include={"name", "phone", "image"}, exclude_none=True)
    if profile:
        user = users.update_user_profile(user_id, profile)
    if user is None:
        raise ValidationError("No valid fields to update")
    return {"success": True, "user": to_public(user)}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, ctx: AuthContext = Depends(require_admin)):
    users.suspend_user(user_id, "Account deleted by admin", ctx.user_id)
    return {"success": True, "message": "User deactivated"}


@app.put("/api/users/{user_id}/role")
def update_user_role(user_id: str, payload: RoleUpdate, ctx: AuthContext = Depends(require_admin)):
    user = users.set_user_role(user_id, payload.role, ctx.user_id)
    return {"success": True, "message": f"User role updated to {payload.role}", "user": to_public(user)}


# Request templates
@app.get("/api/templates")
def list_templates(
    service_type: Optional[str] = Query(None, alias="serviceType"),
    category: Optional[str] = None,
    search: Optional[str] = None,
):
    if search:
        docs = request_templates.search_templates(search)
    elif service_type:
        docs = request_templates.get_templates_by_service_type(service_type)
    elif category:
        docs = request_templates.get_templates_by_category(category)
    else:
        docs = request_templates.get_active_templates()
    return {"templates": _public_list(docs), "count": len(docs)}


@app.post("/api/templates", status_code=201)
def create_template(payload: TemplateCreate, ctx: AuthContext = Depends(require_admin)):
    template = request_templates.create_request_template(payload.model_dump(), ctx.user_id)
    return {"success": True, "template": to_public(template)}


@app.get("/api/templates/{template_id}")
def get_template(template_id: str):
    template = request_templates.get_request_template(template_id)
    if not template:
        raise NotFound("Template not found")
    return {"template": to_public(template)}


@app.put("/api/templates/{template_id}")
def update_template(template_id: str, payload: TemplateUpdate, ctx: AuthContext = Depends(require_admin)):
    template = request_templates.update_request_template(template_id, payload.model_dump(exclude_none=True), ctx.user_id)
    return {"success": True, "template": to_public(template)}


@app.delete("/api/templates/{template_id}")
def delete_template(template_id: str, ctx: AuthContext = Depends(require_admin)):
    request_templates.delete_request_template(template_id, ctx.user_id)
    return {"success": True, "message": "Template deleted"}


@app.post("/api/templates/{template_id}/use")
def use_template(template_id: str, ctx: AuthContext = Depends(get_auth_context)):
    template = request_templates.increment_template_usage(template_id)
    if not template:
        raise NotFound("Template not found")
    return {"success": True, "template": to_public(template)}


# Insights
@app.get("/api/insights")
def list_insights(
    frequency: Optional[str] = None,
    active: Optional[bool] = None,
    locale: Optional[str] = None,
    tags: Optional[str] = None,
):
    tag_list = [t.strip() for t in tags.split(",") if t.strip()] if tags else None
    docs = insights.list_insights(frequency, active, locale, tag_list)
    return {"insights": _public_list(docs), "count": len(docs)}


@app.post("/api/insights", status_code=201)
def create_insight(payload: InsightCreate, ctx: AuthContext = Depends(require_admin)):
    insight = insights.create_insight(payload.model_dump(exclude_none=True), ctx.user_id)
    return {"success": True, "insight": to_public(insight)}


@app.get("/api/insights/active")
def get_active_insight(frequency: str = "daily"):
    return {"insight": to_public(insights.get_active_insight(frequency))}


@app.get("/api/insights/{insight_id}")
def get_insight(insight_id: str):
    insight = insights.get_insight(insight_id)
    if not insight:
        raise NotFound("Insight not found")
    return {"insight": to_public(insight)}


@app.put("/api/insights/{insight_id}")
def update_insight(insight_id: str, payload: InsightUpdate, ctx: AuthContext = Depends(require_admin)):
    updates = payload.model_dump(exclude_none=True)
    activate = updates.pop("active", None)
    insight = insights.update_insight(insight_id, updates, ctx.user_id) if updates else insights.get_insight(insight_id)
    if not insight:
        raise NotFound("Insight not found")
    if activate:
        insight = insights.set_active_insight(insight_id, ctx.user_id)
    elif activate is False:
        insight = insights.deactivate_insight(insight_id, ctx.user_id)
    return {"success": True, "insight": to_public(insight)}


@app.delete("/api/insights/{insight_id}")
def delete_insight(insight_id: str, ctx: AuthContext = Depends(require_admin)):
    if not insights.delete_insight(insight_id, ctx.user_id):
        raise NotFound("Insight not found")
    return {"success": True, "message": "Insight deleted"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
