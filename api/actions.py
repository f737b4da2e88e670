"""POST /api/actions: unified mutation endpoint."""

from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Request
from pydantic import BaseModel

from api.base import success_response
from billing.exceptions import InvalidInputError
from billing.models import (
    EarningStatus,
    InvoiceCreate,
    InvoiceStatus,
    PaymentCreate,
    PaymentMethod,
    PaymentStatus,
)
from utils.timezone import now_utc, parse_boundary


class ActionRequest(BaseModel):
    domain: str
    action: str
    data: dict


def create_actions_router(services: dict) -> APIRouter:
    router = APIRouter()

    config_svc = services["config"]
    handlers = {
        "invoice": InvoiceHandler(services["invoice"], services["payment"], config_svc),
        "payment": PaymentHandler(services["payment"]),
        "payout": PayoutHandler(services["earnings"], services["payout"], config_svc),
        "config": ConfigHandler(config_svc),
    }

    @router.post("/actions")
    async def perform_action(request: Request, body: ActionRequest):
        handler = handlers.get(body.domain)
        if handler is None:
            raise ValueError(
                f"Unknown domain '{body.domain}'. "
                f"Valid domains: {', '.join(sorted(handlers.keys()))}"
            )

        if body.action not in handler.ALLOWED_ACTIONS:
            raise ValueError(
                f"Action '{body.action}' not allowed on '{body.domain}'. "
                f"Allowed: {', '.join(sorted(handler.ALLOWED_ACTIONS))}"
            )

        method = getattr(handler, f"_handle_{body.action}")
        result = method(body.data)
        request_id = getattr(request.state, "request_id", None)
        return success_response(result, request_id).model_dump(mode="json")

    return router


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================


def _required(data: dict, key: str):
    value = data.get(key)
    if value is None or value == "":
        raise InvalidInputError(f"'{key}' is required")
    return value


def _uuid(data: dict, key: str) -> UUID:
    value = _required(data, key)
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidInputError(f"'{key}' must be a UUID")


def _enum(enum_cls, data: dict, key: str):
    value = _required(data, key)
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        valid = ", ".join(e.value for e in enum_cls)
        raise InvalidInputError(f"Invalid {key} '{value}'. Valid values: {valid}")


def _optional_int(data: dict, key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"'{key}' must be a whole number")
    return value


def _datetime(data: dict, key: str):
    value = _required(data, key)
    try:
        return parse_boundary(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"'{key}' must be an ISO 8601 date or timezone-aware datetime")


# =============================================================================
# HANDLER CLASSES
# =============================================================================


class InvoiceHandler:
    ALLOWED_ACTIONS = {"create", "generate", "update_status", "link_payment", "generate_payment", "cancel"}

    def __init__(self, service, payment_service, config_service):
        self.service = service
        self.payment_service = payment_service
        self.config_service = config_service

    def _handle_create(self, data: dict):
        invoice = self.service.create(InvoiceCreate(**data), self.config_service.get_config())
        return invoice.model_dump(mode="json")

    def _handle_generate(self, data: dict):
        config = self.config_service.get_config()
        campaign_ids = data.get("campaign_ids")
        if not isinstance(campaign_ids, list) or not campaign_ids:
            raise InvalidInputError("'campaign_ids' must be a non-empty list")

        if data.get("due_date"):
            due_date = _datetime(data, "due_date")
        else:
            due_date = now_utc() + timedelta(days=config.invoice.due_days)

        result = self.service.generate_invoices(
            [_uuid({"id": cid}, "id") for cid in campaign_ids],
            due_date,
            config,
            tax_rate_bps=_optional_int(data, "tax_rate_bps"),
        )
        return result.model_dump(mode="json")

    def _handle_update_status(self, data: dict):
        invoice = self.service.update_status(_uuid(data, "id"), _enum(InvoiceStatus, data, "status"))
        return invoice.model_dump(mode="json")

    def _handle_link_payment(self, data: dict):
        invoice = self.service.link_payment(_uuid(data, "id"), _uuid(data, "payment_id"))
        return invoice.model_dump(mode="json")

    def _handle_generate_payment(self, data: dict):
        payment, invoice = self.payment_service.generate_for_invoice(
            _uuid(data, "id"), self.config_service.get_config()
        )
        return {
            "payment": payment.model_dump(mode="json"),
            "invoice": invoice.model_dump(mode="json"),
        }

    def _handle_cancel(self, data: dict):
        invoice = self.service.cancel(_uuid(data, "id"))
        return invoice.model_dump(mode="json")


class PaymentHandler:
    ALLOWED_ACTIONS = {"create", "update_status", "refund"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        payment = self.service.create(PaymentCreate(**data))
        return payment.model_dump(mode="json")

    def _handle_update_status(self, data: dict):
        payment = self.service.update_status(
            _uuid(data, "id"), _enum(PaymentStatus, data, "status"), data.get("notes")
        )
        return payment.model_dump(mode="json")

    def _handle_refund(self, data: dict):
        payment = self.service.refund(_uuid(data, "id"), data.get("notes"))
        return payment.model_dump(mode="json")


class PayoutHandler:
    ALLOWED_ACTIONS = {"generate", "update_status", "process", "mark_processed", "cancel"}

    def __init__(self, earnings_service, payout_service, config_service):
        self.earnings_service = earnings_service
        self.payout_service = payout_service
        self.config_service = config_service

    def _handle_generate(self, data: dict):
        result = self.earnings_service.generate_earnings(
            _datetime(data, "start_date"),
            _datetime(data, "end_date"),
            self.config_service.get_config(),
        )
        return result.model_dump(mode="json")

    def _handle_update_status(self, data: dict):
        method = _enum(PaymentMethod, data, "payout_method") if data.get("payout_method") else None
        earning = self.payout_service.update_status(
            _uuid(data, "id"),
            _enum(EarningStatus, data, "status"),
            transaction_id=data.get("transaction_id"),
            payout_method=method,
        )
        return earning.model_dump(mode="json")

    def _handle_process(self, data: dict):
        earning = self.payout_service.process_payout(
            _uuid(data, "id"),
            _required(data, "transaction_id"),
            _enum(PaymentMethod, data, "payout_method"),
        )
        return earning.model_dump(mode="json")

    def _handle_mark_processed(self, data: dict):
        earning = self.payout_service.mark_processed(_uuid(data, "id"))
        return earning.model_dump(mode="json")

    def _handle_cancel(self, data: dict):
        earning = self.payout_service.cancel_payout(_uuid(data, "id"))
        return earning.model_dump(mode="json")


class ConfigHandler:
    ALLOWED_ACTIONS = {"update"}

    def __init__(self, service):
        self.service = service

    def _handle_update(self, data: dict):
        config = self.service.update(
            _required(data, "key"),
            _required(data, "value"),
            data.get("description"),
        )
        return config.model_dump(mode="json")
