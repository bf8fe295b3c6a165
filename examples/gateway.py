#!/usr/bin/env python3
"""
Gateway usage example.

This example demonstrates the gateway's flow-control stack:
- Cached reads through the rate limiter and retry engine
- Arbitrary work with priorities and timeouts
- Batching single-item reads into bulk calls
- Metrics snapshots

Usage:
    export STATESET_API_KEY="your-api-key"
    export STATESET_BASE_URL="https://api.example.com/v1"
    python examples/gateway.py
"""

import asyncio

from stateset_gateway import (
    GatewayContext,
    GatewaySettings,
    Priority,
    RetryConfig,
    RetryExhaustedError,
)


async def cached_reads(gateway: GatewayContext) -> None:
    """Read the same resource twice; the second read comes from the cache."""
    print("Listing open orders twice...")
    for _ in range(2):
        orders = await gateway.request(
            "GET",
            "/orders",
            operation="list_orders",
            params={"status": "open"},
            tags=["orders"],
        )
        print(f"  got {len(orders.get('data', []))} orders")

    stats = gateway.cache.get_stats()
    print(f"Cache hits: {stats.hits}, misses: {stats.misses}")

    # Writes go straight to the API; drop stale reads afterwards
    gateway.cache.invalidate_by_tag("orders")


async def prioritized_work(gateway: GatewayContext) -> None:
    """Run local work with different priorities and a strict retry policy."""
    print("\nRunning prioritized work...")

    async def report() -> str:
        await asyncio.sleep(0.05)
        return "report ready"

    try:
        results = await asyncio.gather(
            gateway.execute("refund", Priority.CRITICAL, report),
            gateway.execute("nightly_report", Priority.LOW, report, timeout=1.0),
            gateway.execute(
                "sync_inventory",
                Priority.NORMAL,
                report,
                retry=RetryConfig.strict(operation_name="sync_inventory"),
            ),
        )
        print(f"  {results}")
    except RetryExhaustedError as e:
        print(f"  gave up after {e.attempts} attempts: {e.error_kind.value}")


async def batched_reads(gateway: GatewayContext) -> None:
    """Group single-order lookups into one bulk call."""
    print("\nBatching order lookups...")

    async def fetch_orders(order_ids: list[str]) -> list[dict]:
        print(f"  bulk fetch of {len(order_ids)} orders")
        return [{"id": order_id} for order_id in order_ids]

    gateway.register_batch("get_order", fetch_orders)
    orders = await asyncio.gather(
        *(gateway.batch("get_order", f"ord_{i}") for i in range(5))
    )
    print(f"  resolved {[o['id'] for o in orders]}")


async def main() -> None:
    """Run all examples."""
    print("=" * 50)
    print("stateset-gateway example")
    print("=" * 50)

    settings = GatewaySettings.from_env()
    async with GatewayContext(settings, configure_logging=True) as gateway:
        try:
            await cached_reads(gateway)
        except Exception as e:
            print(f"Remote API unavailable: {e}")

        await prioritized_work(gateway)
        await batched_reads(gateway)

        print("\nRate limiter:")
        for key, value in gateway.get_metrics()["rate_limiter"].items():
            print(f"  {key}: {value}")


if __name__ == "__main__":
    asyncio.run(main())
