#!/usr/bin/env python3
"""
Order Notifications - RelayStack Demo Application

Run modes:
  python main.py                          # Demo with sample orders
  python main.py --backend file           # Durable file-backed queue
  python main.py --stress --count 200     # Stress test
  python main.py --failure-rate 0.5       # Flaky providers, watch the retries
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import UTC, datetime
from pathlib import Path

from relaystack import (
    ChannelProvider,
    EngineSettings,
    StaticRecipientLoader,
    TemplateRenderer,
    build_engine,
    load_event_types,
)
from relaystack.core.errors import PayloadValidationError, ProviderFailureError
from relaystack.core.event import Event
from relaystack.core.handlers import Handler
from relaystack.core.models import DeliveryContext, NotificationResult
from relaystack.providers.base import template_variables

HERE = Path(__file__).parent


class ConsoleProvider(ChannelProvider):
    """Prints rendered messages instead of sending them.

    Fails ``failure_rate`` of the attempts with a retryable error.
    """

    def __init__(
        self,
        channel: str,
        renderer: TemplateRenderer,
        failure_rate: float = 0.0,
        verbose: bool = True,
    ):
        super().__init__(f"console-{channel}")
        self.channel = channel
        self.renderer = renderer
        self.failure_rate = failure_rate
        self.verbose = verbose
        self.delivered = 0

    async def send(self, payload: dict, context: DeliveryContext) -> NotificationResult:
        await asyncio.sleep(random.uniform(0.001, 0.01))
        if random.random() < self.failure_rate:
            raise ProviderFailureError(f"{self.channel} gateway timeout", self.channel, self.name)

        body = payload
        if context.template_id:
            body = self.renderer.render(context.template_id, template_variables(payload, context))
        self.delivered += 1
        if self.verbose:
            to = ", ".join(r.address_for(self.channel) or r.id for r in context.recipients)
            first_line = str(body).strip().splitlines()[0]
            print(f"  [{self.channel:5}] attempt {context.attempt} -> {to or '-'}: {first_line}")
        return self.result(context)


class RevenueHandler(Handler):
    """Business handler: sums order totals as they are emitted."""

    listens_to = ["order.created"]

    def __init__(self):
        super().__init__()
        self.revenue = 0.0
        self.orders = 0

    def handle(self, event: Event) -> None:
        self.revenue += event.payload["total"]
        self.orders += 1


def create_sample_orders(count: int = 5) -> list[dict]:
    """Create sample orders; the last one is deliberately invalid."""
    orders = [
        {
            "order_id": f"ORD-{random.randint(10000, 99999)}",
            "customer_email": f"customer{i}@example.com",
            "total": round(random.uniform(5, 500), 2),
            "placed_at": datetime.now(UTC),
        }
        for i in range(count)
    ]
    orders.append({"order_id": "ORD-BROKEN", "total": "free"})
    return orders


async def run_demo(
    orders: list[dict],
    backend: str = "memory",
    failure_rate: float = 0.0,
    verbose: bool = True,
) -> None:
    renderer = TemplateRenderer()
    renderer.load_directory(HERE / "templates")

    recipients = StaticRecipientLoader(
        {"*": [{"id": "sales", "addresses": {"chat": "#sales"}}]},
        payload_fields={"email": "customer_email"},
    )
    email = ConsoleProvider("email", renderer, failure_rate, verbose)
    chat = ConsoleProvider("chat", renderer, failure_rate, verbose)
    revenue = RevenueHandler()

    settings = EngineSettings(
        queue_backend=backend,
        data_dir=HERE / "queue-data",
        poll_interval=0.05,
        notification_concurrency=4,
        log_level="ERROR",
    )
    engine = build_engine(
        load_event_types(HERE / "event_types.json"),
        settings=settings,
        providers=[email, chat],
        handlers=[revenue],
        recipient_loader=recipients,
    )

    print("=" * 60)
    print("ORDER NOTIFICATIONS")
    print("=" * 60)
    print(f"\nEmitting {len(orders)} orders ({backend} queue)...\n")

    start = time.monotonic()
    async with engine:
        rejected = 0
        for order in orders:
            try:
                await engine.emit("order.created", order)
            except PayloadValidationError as e:
                rejected += 1
                if verbose:
                    print(f"  [reject] {e}")

        shipped = await engine.emit_and_wait(
            "order.shipped",
            {"order_id": orders[0]["order_id"], "customer_email": orders[0]["customer_email"]},
            timeout=2.0,
        )

        logins = [
            (await engine.emit("user.login", {"user_id": "u-42"})).status.value for _ in range(5)
        ]

        await engine.queue.drain(timeout=30.0)
        await engine.handlers.drain(timeout=5.0)
        stats = await engine.queue.stats()
        dead = await engine.queue.dead_letters()

    elapsed = time.monotonic() - start
    print("\n" + "=" * 60)
    print("RESULTS")
    print("=" * 60)
    print(f"  Orders accepted: {revenue.orders} (rejected: {rejected})")
    print(f"  Revenue seen by handler: {revenue.revenue:.2f} EUR")
    print(f"  Sync shipment notice: {[r.status.value for r in shipped.results]}")
    print(f"  Login rate limiting: {logins}")
    print(f"  Deliveries: email={email.delivered} chat={chat.delivered}")
    print(f"  Queue: completed={stats.completed} failed={stats.failed}")
    if dead:
        print(f"\n  DLQ: {len(dead)} jobs")
        for job in dead[:3]:
            print(f"    - {job.payload['channel']}: {job.last_error}")
    print(f"\n  Time: {elapsed:.2f}s ({len(orders) / elapsed:.1f} orders/sec)")


def main():
    parser = argparse.ArgumentParser(description="Order Notifications Demo")
    parser.add_argument("--backend", choices=["memory", "file", "redis"], default="memory")
    parser.add_argument("--stress", action="store_true", help="Stress test mode")
    parser.add_argument("--count", type=int, default=100, help="Number of orders for stress test")
    parser.add_argument(
        "--failure-rate", type=float, default=0.2, help="Share of provider attempts that fail"
    )
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    args = parser.parse_args()

    orders = create_sample_orders(args.count if args.stress else 5)
    try:
        asyncio.run(
            run_demo(
                orders,
                backend=args.backend,
                failure_rate=args.failure_rate,
                verbose=not (args.quiet or args.stress),
            )
        )
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
