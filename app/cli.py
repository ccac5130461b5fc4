"""Webhook test harness CLI: receive, send, load-test, generate and verify webhooks."""

import asyncio
import json
import os
import time
from typing import Optional

import click
import httpx

from app.schemas.events import EVENT_CATEGORIES, WebhookEventType
from app.services.sample_payloads import generate_payload
from app.services.signing import SIGNATURE_ALGORITHM, serialize_payload, sign, verify

EVENT_CHOICE = click.Choice([e.value for e in WebhookEventType])


def make_http_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


def _request(event: str, secret: Optional[str]) -> tuple[bytes, dict[str, str]]:
    payload = generate_payload(event)
    body = serialize_payload(payload)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "VASA-Webhooks-Test/1.0",
        "X-VASA-Event": event,
        "X-VASA-Delivery": payload["delivery_id"],
        "X-VASA-Webhook": payload["webhook_id"],
    }
    if secret:
        headers["X-VASA-Signature"] = sign(body, secret)
        headers["X-VASA-Signature-Algorithm"] = SIGNATURE_ALGORITHM
    return body, headers


async def _send_one(client: httpx.AsyncClient, url: str, event: str, secret: Optional[str]) -> dict:
    body, headers = _request(event, secret)
    start = time.monotonic()
    try:
        resp = await client.post(url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        return {
            "success": False,
            "error": str(exc) or exc.__class__.__name__,
            "delivery_id": headers["X-VASA-Delivery"],
            "response_time_ms": int((time.monotonic() - start) * 1000),
        }
    return {
        "success": resp.is_success,
        "status_code": resp.status_code,
        "body": resp.text,
        "delivery_id": headers["X-VASA-Delivery"],
        "response_time_ms": int((time.monotonic() - start) * 1000),
    }


@click.group()
def cli() -> None:
    """VASA webhook engine and test harness."""
    pass


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", "-p", default=3000, show_default=True, type=int)
@click.option("--secret", "-s", default=None, help="Reject requests not signed with this secret")
def server(host: str, port: int, secret: Optional[str]) -> None:
    """Start a test receiver that records incoming webhooks."""
    import uvicorn

    from app.receiver import create_receiver_app

    click.echo(f"Webhook endpoint: http://{host}:{port}/webhook")
    click.echo(f"Received list:    http://{host}:{port}/webhooks (DELETE to clear)")
    uvicorn.run(create_receiver_app(secret=secret), host=host, port=port)


@cli.command()
@click.argument("url")
@click.argument("event", type=EVENT_CHOICE)
@click.option("--secret", "-s", default=None, help="Webhook secret for signing")
@click.option("--timeout", "-t", default=30000, show_default=True, type=int, help="Request timeout in ms")
def send(url: str, event: str, secret: Optional[str], timeout: int) -> None:
    """Send one sample webhook to URL."""

    async def _send() -> dict:
        async with make_http_client(timeout / 1000) as client:
            return await _send_one(client, url, event, secret)

    click.echo(f"Sending {event} to {url}")
    result = asyncio.run(_send())
    click.echo(f"Delivery ID: {result['delivery_id']}")
    if "status_code" in result:
        click.echo(f"Status: {result['status_code']} ({result['response_time_ms']}ms)")
        click.echo(f"Body: {result['body']}")
    if result["success"]:
        click.echo("Webhook delivered successfully")
    else:
        click.echo(f"Webhook delivery failed{': ' + result['error'] if 'error' in result else ''}")
        raise SystemExit(1)


@cli.command()
@click.argument("url")
@click.argument("event", type=EVENT_CHOICE)
@click.option("--secret", "-s", default=None, help="Webhook secret for signing")
@click.option("--count", "-n", default=10, show_default=True, type=click.IntRange(min=1))
@click.option("--concurrency", "-c", default=3, show_default=True, type=click.IntRange(min=1))
@click.option("--delay", "-d", default=1000, show_default=True, type=click.IntRange(min=0),
              help="Delay between batches in ms")
def load(url: str, event: str, secret: Optional[str], count: int, concurrency: int, delay: int) -> None:
    """Send COUNT webhooks in batches of CONCURRENCY and report throughput."""

    async def _load() -> list[dict]:
        results: list[dict] = []
        async with make_http_client(30.0) as client:
            for start in range(0, count, concurrency):
                batch = min(concurrency, count - start)
                results += await asyncio.gather(*(_send_one(client, url, event, secret) for _ in range(batch)))
                if delay and start + batch < count:
                    await asyncio.sleep(delay / 1000)
        return results

    click.echo(f"Load test: {count} x {event} -> {url} (concurrency {concurrency}, delay {delay}ms)")
    started = time.monotonic()
    results = asyncio.run(_load())
    elapsed = max(time.monotonic() - started, 1e-6)

    successful = sum(1 for r in results if r["success"])
    times = [r["response_time_ms"] for r in results if r["success"]]
    click.echo(f"Successful: {successful}/{count} ({successful / count * 100:.1f}%)")
    click.echo(f"Failed: {count - successful}/{count}")
    click.echo(f"Average response time: {sum(times) / len(times):.0f}ms" if times else "Average response time: N/A")
    click.echo(f"Throughput: {count / elapsed:.2f} webhooks/sec")


@cli.command()
@click.argument("event", type=EVENT_CHOICE)
@click.option("--pretty/--compact", default=True, help="Pretty-print or emit exact wire bytes")
def generate(event: str, pretty: bool) -> None:
    """Print a sample payload for EVENT."""
    payload = generate_payload(event)
    if pretty:
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        click.echo(serialize_payload(payload).decode("utf-8"))


@cli.command(name="verify")
@click.argument("payload")
@click.argument("signature")
@click.argument("secret")
def verify_cmd(payload: str, signature: str, secret: str) -> None:
    """Check SIGNATURE over PAYLOAD (raw body string, or path to a file holding it)."""
    if os.path.isfile(payload):
        with open(payload, "rb") as f:
            body = f.read()
    else:
        body = payload.encode("utf-8")
    valid = verify(body, signature, secret)
    click.echo(f"Signature verification: {'VALID' if valid else 'INVALID'}")
    click.echo(f"Expected: {sign(body, secret)}")
    click.echo(f"Received: {signature}")
    if not valid:
        raise SystemExit(1)


@cli.command()
def events() -> None:
    """List event types by category."""
    for category, names in EVENT_CATEGORIES.items():
        click.echo(f"{category}:")
        for name in names:
            click.echo(f"  {name}")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--reload", is_flag=True, default=False)
def serve(host: str, port: int, reload: bool) -> None:
    """Run the webhook engine API."""
    import uvicorn

    uvicorn.run("app.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
