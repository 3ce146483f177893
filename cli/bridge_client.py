"""Admin CLI for a botbridge server."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
from urllib.parse import urlparse

import httpx

TOKEN_ENV = "BOTBRIDGE_ADMIN_TOKEN"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


class BridgeClient:
    """Client for the botbridge admin endpoints."""

    def __init__(
        self,
        server_url: str,
        token: str,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.server_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=300.0,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> BridgeClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self.client.request(method, path, **kwargs)
        resp.raise_for_status()
        return resp.json()

    def sharepoint_register(self, webhook_url: str | None = None) -> dict[str, Any]:
        body = {"webhook_url": webhook_url} if webhook_url else None
        result: dict[str, Any] = self._request("POST", "/api/sharepoint/register", json=body)
        return result

    def sharepoint_resync(self) -> dict[str, Any]:
        result: dict[str, Any] = self._request("POST", "/api/sharepoint/resync")
        return result

    def sharepoint_unregister(self) -> list[str]:
        result: list[str] = self._request("POST", "/api/sharepoint/unregister")["libraries"]
        return result

    def sharepoint_status(self) -> dict[str, Any]:
        result: dict[str, Any] = self._request("GET", "/api/sharepoint/status")
        return result

    def sharepoint_libraries(self) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = self._request("GET", "/api/sharepoint/libraries")
        return result

    def excel_sync(
        self, file_url: str, mapping: str, process_all_sheets: bool = False
    ) -> list[dict[str, Any]]:
        data = self._request(
            "POST",
            "/api/excel/sync",
            json={
                "file_url": file_url,
                "sheet_table_mapping": mapping,
                "process_all_sheets": process_all_sheets,
            },
        )
        result: list[dict[str, Any]] = data["processed_sheets"]
        return result


def _print_subscriptions(data: dict[str, Any]) -> None:
    if not data.get("registered"):
        print("SharePoint sync is not registered")
        return
    for sub in data.get("subscriptions", []):
        print(f"  {sub['library']}: webhook={sub['webhook_subscription_id']}")
        print(f"    token={sub['change_token']}")


def _error_detail(exc: httpx.HTTPStatusError) -> str:
    try:
        detail = exc.response.json().get("detail")
    except (json.JSONDecodeError, AttributeError):
        detail = None
    return str(detail or exc.response.text)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="botbridge-admin",
        description="Operate a botbridge server",
    )
    parser.add_argument("--server", "-s", default="http://localhost:8000", help="Server URL")
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--token", help=f"Admin token (default: ${TOKEN_ENV})")

    subparsers = parser.add_subparsers(dest="command")

    sharepoint = subparsers.add_parser("sharepoint", help="SharePoint sync")
    sp_commands = sharepoint.add_subparsers(dest="action")
    register = sp_commands.add_parser("register", help="Create webhooks and load libraries")
    register.add_argument("--webhook-url", help="Override the notification URL")
    sp_commands.add_parser("resync", help="Reload every registered library")
    sp_commands.add_parser("unregister", help="Remove webhooks and stored tokens")
    sp_commands.add_parser("status", help="Show registered libraries")
    sp_commands.add_parser("libraries", help="List libraries at the configured site")

    excel = subparsers.add_parser("excel", help="Excel import")
    excel_commands = excel.add_subparsers(dest="action")
    excel_sync = excel_commands.add_parser("sync", help="Import workbook sheets into tables")
    excel_sync.add_argument("--file-url", required=True, help="/<library>/<path>.xlsx")
    excel_sync.add_argument("--mapping", required=True, help="Sheet1:table1,Sheet2:table2")
    excel_sync.add_argument("--all-sheets", action="store_true", help="Skip failing sheets")

    args = parser.parse_args(argv)
    if args.command is None or getattr(args, "action", None) is None:
        parser.print_help()
        return

    try:
        server_url = validate_server_url(args.server, args.allow_insecure_http)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    token = args.token or os.environ.get(TOKEN_ENV)
    if not token:
        print(f"Error: --token or ${TOKEN_ENV} is required")
        sys.exit(1)

    with BridgeClient(server_url, token) as client:
        try:
            _run(client, args)
        except httpx.HTTPStatusError as exc:
            print(f"Error: {exc.response.status_code} {_error_detail(exc)}")
            sys.exit(1)


def _run(client: BridgeClient, args: argparse.Namespace) -> None:
    if args.command == "sharepoint":
        if args.action == "register":
            print("Registered:")
            _print_subscriptions(client.sharepoint_register(args.webhook_url))
        elif args.action == "resync":
            print("Resynced:")
            _print_subscriptions(client.sharepoint_resync())
        elif args.action == "unregister":
            libraries = client.sharepoint_unregister()
            print(f"Unregistered {len(libraries)} libraries: {', '.join(libraries)}")
        elif args.action == "status":
            _print_subscriptions(client.sharepoint_status())
        elif args.action == "libraries":
            for lib in client.sharepoint_libraries():
                print(f"  {lib['name']} ({lib['web_url']})")
    elif args.command == "excel" and args.action == "sync":
        sheets = client.excel_sync(args.file_url, args.mapping, args.all_sheets)
        print(f"Imported {len(sheets)} sheet(s):")
        for sheet in sheets:
            print(f"  {sheet['sheet_name']} -> {sheet['table_name']} ({sheet['row_count']} rows)")


if __name__ == "__main__":
    main()
