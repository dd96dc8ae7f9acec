"""
Request dispatch: match the rule table, run the action, write the response.

Every inbound request goes through ``Dispatcher.dispatch``, mounted as the
single catch-all route of the FastAPI application built by ``create_app``.
"""

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace

from service_proxy.errors import UpstreamUnavailable
from service_proxy.forwarder import Forwarder
from service_proxy.rules import (
    InfoAction,
    ProxyAction,
    RoutingRule,
    RuleTable,
    StaticResponseAction,
)
from service_proxy.telemetry import instrument_app
from service_proxy.utils.traced_requests import record_outcome, traced_request

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

PROXIED_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE"]


def render_info(action: InfoAction, rule_table: RuleTable) -> bytes:
    body = {
        "service": action.service,
        "version": action.version,
        "proxies": rule_table.proxy_mappings(),
        "endpoints": dict(action.endpoints),
    }
    return json.dumps(body, indent=2).encode("utf-8")


class Dispatcher:
    def __init__(self, rule_table: RuleTable, forwarder: Forwarder):
        self.rule_table = rule_table
        self.forwarder = forwarder

    async def dispatch(self, request: Request) -> Response:
        method = request.method
        path = request.url.path
        rule = self.rule_table.match(method, path)

        with traced_request(
            tracer,
            operation="proxy.dispatch",
            method=method,
            path=path,
            start_message=f"[Dispatch] {method} {path} matched {rule.id if rule else None}",
            extra_attrs={"proxy.rule_id": rule.id if rule else None},
        ) as span:
            if rule is None:
                record_outcome("no_route")
                span.set_attribute("http.status_code", 404)
                logger.info(f"[Dispatch] No route for {method} {path}")
                return JSONResponse(
                    status_code=404,
                    content={"error": "No route", "method": method, "path": path},
                )

            try:
                response = await self._execute(rule, request)
            except UpstreamUnavailable as e:
                record_outcome("upstream_unavailable")
                span.set_attribute("http.status_code", 502)
                span.set_attribute("proxy.error", e.reason)
                logger.warning(f"[Dispatch] {method} {path} via {rule.id}: {e}")
                return JSONResponse(
                    status_code=502,
                    content={"error": "Bad gateway", "detail": str(e)},
                )

            span.set_attribute("http.status_code", response.status_code)
            record_outcome("proxied" if isinstance(rule.action, ProxyAction) else "static")
            return response

    async def _execute(self, rule: RoutingRule, request: Request) -> Response:
        action = rule.action
        if isinstance(action, ProxyAction):
            return await self.forwarder.forward(request, action)
        if isinstance(action, StaticResponseAction):
            return Response(
                content=action.body,
                status_code=action.status,
                headers=dict(action.headers),
            )
        if isinstance(action, InfoAction):
            return Response(
                content=render_info(action, self.rule_table),
                status_code=200,
                media_type="application/json",
            )
        raise TypeError(f"Unsupported action {type(action).__name__} on rule {rule.id}")


def create_app(dispatcher: Dispatcher) -> FastAPI:
    """Build the ASGI application that routes every request through the dispatcher."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await dispatcher.forwarder.aclose()

    app = FastAPI(
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.add_api_route(
        "/{path:path}",
        dispatcher.dispatch,
        methods=PROXIED_METHODS,
        include_in_schema=False,
    )
    app.state.dispatcher = dispatcher
    instrument_app(app)
    return app
