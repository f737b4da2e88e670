"""GET /api/data: unified read endpoint."""

from uuid import UUID

from fastapi import APIRouter, Query, Request
from fastapi.responses import Response

from api.base import success_response
from billing.export import export_filename, render_csv
from billing.models import AnalyticsPeriod, Granularity, ListFilters, PageRequest, ReportType
from utils.timezone import now_utc, parse_boundary


VALID_TYPES = {
    "invoices", "payments", "payouts", "invoices_export",
    "report", "overview", "partner_summary", "config", "invoice",
}
EXPORT_FORMATS = {"csv", "json"}


def _optional_uuid(value: str | None, name: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        raise ValueError(f"'{name}' must be a UUID")


def create_data_router(services: dict) -> APIRouter:
    router = APIRouter()

    invoice_svc = services["invoice"]
    payment_svc = services["payment"]
    earnings_svc = services["earnings"]
    report_svc = services["report"]
    analytics_svc = services["partner_analytics"]
    config_svc = services["config"]

    @router.get("/data")
    async def get_data(
        request: Request,
        type: str | None = Query(None),
        id: str | None = Query(None),
        status: str | None = Query(None),
        advertiser_id: str | None = Query(None),
        campaign_id: str | None = Query(None),
        start_date: str | None = Query(None),
        end_date: str | None = Query(None),
        min_amount_cents: int | None = Query(None, ge=0),
        max_amount_cents: int | None = Query(None, ge=0),
        search: str | None = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=500),
        report: str | None = Query(None),
        granularity: str | None = Query(None),
        period: str | None = Query(None),
        format: str = Query("csv"),
    ):
        if type is None:
            raise ValueError("'type' query parameter is required")

        if type not in VALID_TYPES:
            raise ValueError(f"Unknown type '{type}'. Valid types: {', '.join(sorted(VALID_TYPES))}")

        start = parse_boundary(start_date) if start_date else None
        end = parse_boundary(end_date) if end_date else None
        request_id = getattr(request.state, "request_id", None)

        if type in ("invoices", "payments", "payouts", "invoices_export"):
            filters = ListFilters(
                status=status,
                advertiser_id=_optional_uuid(advertiser_id, "advertiser_id"),
                campaign_id=_optional_uuid(campaign_id, "campaign_id"),
                start_date=start,
                end_date=end,
                min_amount_cents=min_amount_cents,
                max_amount_cents=max_amount_cents,
                search=search,
            )
            if type == "invoices_export":
                return _export_invoices(invoice_svc, filters, format, request_id)

            page_request = PageRequest(page=page, limit=limit)

            if type == "invoices":
                result = invoice_svc.list_invoices(filters, page_request)
            elif type == "payments":
                result = payment_svc.list_payments(filters, page_request)
            else:
                result = earnings_svc.list_payouts(filters, page_request)
            return success_response(result.model_dump(mode="json"), request_id).model_dump(mode="json")

        if type == "invoice":
            if not id:
                raise ValueError("'invoice' type requires 'id' parameter")
            invoice = invoice_svc.get_view(UUID(id))
            return success_response(invoice.model_dump(mode="json"), request_id).model_dump(mode="json")

        config = config_svc.get_config()

        if type == "report":
            result = report_svc.report(
                ReportType(report or ReportType.REVENUE.value),
                config,
                start=start,
                end=end,
                granularity=Granularity(granularity) if granularity else None,
            )
            return success_response(result.model_dump(mode="json"), request_id).model_dump(mode="json")

        if type == "overview":
            result = report_svc.overview(config, start=start, end=end)
            return success_response(result.model_dump(mode="json"), request_id).model_dump(mode="json")

        if type == "partner_summary":
            if not id:
                raise ValueError("'partner_summary' type requires 'id' parameter")
            result = analytics_svc.summary(
                UUID(id),
                config,
                AnalyticsPeriod(period or AnalyticsPeriod.THIRTY_DAYS.value),
            )
            return success_response(result.model_dump(mode="json"), request_id).model_dump(mode="json")

        return _handle_config(config_svc, config, request_id)

    return router


def _export_invoices(invoice_svc, filters, export_format, request_id):
    if export_format not in EXPORT_FORMATS:
        raise ValueError(
            f"Unsupported export format '{export_format}'. Valid formats: {', '.join(sorted(EXPORT_FORMATS))}"
        )

    rows = invoice_svc.export_invoices(filters)

    if export_format == "json":
        data = {"invoices": [row.model_dump(mode="json") for row in rows], "count": len(rows)}
        return success_response(data, request_id).model_dump(mode="json")

    filename = export_filename(now_utc().date(), "csv")
    return Response(
        content=render_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _handle_config(config_svc, config, request_id):
    entries = config_svc.list_entries()
    data = {
        "config": config.model_dump(mode="json"),
        "entries": entries,
    }
    return success_response(data, request_id).model_dump(mode="json")
