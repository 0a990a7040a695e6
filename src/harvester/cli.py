"""Command-line interface for Harvester."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, Optional, Tuple, TypeVar

import click
import structlog
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from harvester import __version__
from harvester.config import load_config
from harvester.container import DependencyContainer
from harvester.exceptions import HarvesterError
from harvester.observability import TaskEvent, configure_logging
from harvester.protocols import Product, ProductStatus, Proxy, ProxyType, Task, TaskConfig, TaskType
from harvester.storage import MAX_PRODUCT_PAGE

console = Console()
logger = structlog.get_logger(__name__)

T = TypeVar("T")

_STATUS_STYLES = {
    "pending": "white",
    "running": "cyan",
    "paused": "yellow",
    "completed": "green",
    "failed": "red",
    "stopped": "magenta",
}

_PRODUCT_STYLES = {
    "pending": "pending",
    "approved": "[green]approved[/green]",
    "rejected": "[red]rejected[/red]",
}


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def _run(ctx: click.Context, body: Callable[[DependencyContainer], Awaitable[T]], services: bool = False) -> T:
    """Open a container for the duration of ``body`` and report engine errors cleanly."""

    async def runner() -> T:
        container = DependencyContainer(
            config_path=ctx.obj["config_path"], config=ctx.obj["config"], start_services=services
        )
        async with container.lifecycle():
            return await body(container)

    try:
        return asyncio.run(runner())
    except HarvesterError as e:
        _fail(str(e))


def _format_ts(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _print_event(event: TaskEvent) -> None:
    stamp = event.timestamp.strftime("%H:%M:%S")
    if event.type == "task_status":
        style = _STATUS_STYLES.get(event.status or "", "white")
        console.print(f"[dim]{stamp}[/dim] task {event.task_id} -> [{style}]{event.status}[/{style}]")
        return
    style = {"error": "red", "warning": "yellow"}.get(event.level, "white")
    console.print(f"[dim]{stamp}[/dim] [{style}]{escape(event.message)}[/{style}]")


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """Harvester - resumable, proxy-rotating crawl engine."""
    ctx.ensure_object(dict)
    config_path = Path(config) if config else None
    try:
        loaded = load_config(config_path)
    except (OSError, ValueError) as e:
        _fail(f"failed to load configuration: {e}")
    if log_level:
        loaded.monitoring.log_level = log_level
    configure_logging(loaded.monitoring)
    ctx.obj["config_path"] = config_path
    ctx.obj["config"] = loaded


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create or migrate the database schema."""

    async def body(container: DependencyContainer) -> Path:
        assert container.config is not None
        return container.config.storage.db_path

    path = _run(ctx, body)
    console.print(f"[green]Database ready at {path}[/green]")


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------


@cli.group()
def task() -> None:
    """Manage crawl tasks."""


@task.command("create")
@click.argument("name")
@click.argument("url")
@click.option("--type", "task_type", default="web", type=click.Choice([t.value for t in TaskType]))
@click.option("--crawler-type", default=None, help="Strategy selector, e.g. embroidery_api")
@click.option("--method", default=None, help="HTTP method for api tasks")
@click.option("--config-json", default=None, help="Raw JSON configuration blob")
@click.pass_context
def task_create(
    ctx: click.Context,
    name: str,
    url: str,
    task_type: str,
    crawler_type: Optional[str],
    method: Optional[str],
    config_json: Optional[str],
) -> None:
    """Create a task."""
    try:
        settings = TaskConfig.model_validate_json(config_json) if config_json else TaskConfig()
    except ValueError as e:
        _fail(f"invalid task config: {e}")
    updates = {k: v for k, v in (("crawler_type", crawler_type), ("method", method)) if v}
    if updates:
        settings = settings.model_copy(update=updates)

    async def body(container: DependencyContainer) -> Task:
        assert container.repository is not None
        return await container.repository.create_task(
            Task(name=name, url=url, type=TaskType(task_type), config=settings.to_json())
        )

    created = _run(ctx, body)
    console.print(f"[green]Created task {created.id}[/green] ({created.name})")


@task.command("list")
@click.pass_context
def task_list(ctx: click.Context) -> None:
    """List tasks."""

    async def body(container: DependencyContainer) -> list:
        assert container.repository is not None
        return await container.repository.list_tasks()

    tasks = _run(ctx, body)
    table = Table(title="Tasks")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("URL", overflow="fold")
    table.add_column("Updated")
    for item in tasks:
        style = _STATUS_STYLES.get(item.status.value, "white")
        table.add_row(
            str(item.id),
            escape(item.name),
            item.type.value,
            f"[{style}]{item.status.value}[/{style}]",
            escape(item.url),
            _format_ts(item.updated_at),
        )
    console.print(table)


@task.command("show")
@click.argument("task_id", type=int)
@click.pass_context
def task_show(ctx: click.Context, task_id: int) -> None:
    """Show a task with its latest results."""

    async def body(container: DependencyContainer) -> tuple:
        assert container.repository is not None
        found = await container.repository.get_task(task_id)
        results = await container.repository.list_crawl_results(task_id, limit=10)
        return found, results

    found, results = _run(ctx, body)
    settings = found.settings
    console.print(
        Panel(
            f"Name: {found.name}\n"
            f"URL: {escape(found.url)}\n"
            f"Type: {found.type.value}\n"
            f"Status: {found.status.value}\n"
            f"Resume cursor: {settings.last_from if settings.last_from is not None else '-'}\n"
            f"Started: {_format_ts(found.started_at)}\n"
            f"Completed: {_format_ts(found.completed_at)}\n"
            f"Config: {escape(found.config)}",
            title=f"Task {found.id}",
        )
    )
    if results:
        table = Table(title="Recent results")
        table.add_column("Status", justify="right")
        table.add_column("Time (ms)", justify="right")
        table.add_column("Proxy")
        table.add_column("Error", overflow="fold")
        for result in results:
            table.add_row(
                str(result.status_code or "-"),
                str(result.response_time_ms),
                result.proxy_used or "direct",
                result.error or "",
            )
        console.print(table)


@task.command("delete")
@click.argument("task_id", type=int)
@click.pass_context
def task_delete(ctx: click.Context, task_id: int) -> None:
    """Delete a task."""

    async def body(container: DependencyContainer) -> None:
        assert container.repository is not None
        await container.repository.delete_task(task_id)

    _run(ctx, body)
    console.print(f"[green]Deleted task {task_id}[/green]")


@task.command("clear-results")
@click.argument("task_id", type=int)
@click.pass_context
def task_clear_results(ctx: click.Context, task_id: int) -> None:
    """Delete the stored results of a task."""

    async def body(container: DependencyContainer) -> int:
        assert container.repository is not None
        await container.repository.get_task(task_id)
        return await container.repository.delete_crawl_results(task_id)

    removed = _run(ctx, body)
    console.print(f"[green]Cleared {removed} result(s) of task {task_id}[/green]")


@task.command("run")
@click.argument("task_id", type=int)
@click.option("--watch", is_flag=True, help="Keep running for incremental checks after the crawl finishes")
@click.pass_context
def task_run(ctx: click.Context, task_id: int, watch: bool) -> None:
    """Run a task in the foreground, streaming its events."""

    async def body(container: DependencyContainer) -> None:
        assert container.engine is not None and container.search_crawler is not None
        events = container.events.subscribe()
        try:
            await container.engine.start(task_id)

            def keep_going() -> bool:
                if container.engine.is_active(task_id):
                    return True
                return watch and container.search_crawler.is_monitoring(task_id)

            while keep_going() or not events.empty():
                try:
                    event = await asyncio.wait_for(events.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                if event.task_id == task_id:
                    _print_event(event)
        finally:
            container.events.unsubscribe(events)

    try:
        _run(ctx, body, services=True)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, task execution cancelled[/yellow]")


# ----------------------------------------------------------------------
# Proxies
# ----------------------------------------------------------------------


@cli.group()
def proxy() -> None:
    """Manage egress proxies."""


@proxy.command("add")
@click.argument("host")
@click.argument("port", type=click.IntRange(1, 65535))
@click.option("--type", "proxy_type", default="http", type=click.Choice([t.value for t in ProxyType]))
@click.option("--username", default=None)
@click.option("--password", default=None)
@click.pass_context
def proxy_add(
    ctx: click.Context,
    host: str,
    port: int,
    proxy_type: str,
    username: Optional[str],
    password: Optional[str],
) -> None:
    """Register a proxy."""

    async def body(container: DependencyContainer) -> Proxy:
        assert container.repository is not None
        return await container.repository.create_proxy(
            Proxy(host=host, port=port, type=ProxyType(proxy_type), username=username, password=password)
        )

    created = _run(ctx, body)
    console.print(f"[green]Added proxy {created.id}[/green] ({created.type.value}://{created.address})")


@proxy.command("list")
@click.pass_context
def proxy_list(ctx: click.Context) -> None:
    """List proxies with their health."""

    async def body(container: DependencyContainer) -> list:
        assert container.repository is not None
        return await container.repository.list_proxies()

    proxies = _run(ctx, body)
    table = Table(title="Proxies")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Address")
    table.add_column("Type")
    table.add_column("Auth")
    table.add_column("Active")
    table.add_column("Failures", justify="right")
    table.add_column("Last checked")
    for item in proxies:
        table.add_row(
            str(item.id),
            item.address,
            item.type.value,
            "yes" if item.username else "no",
            "[green]yes[/green]" if item.is_active else "[red]no[/red]",
            str(item.failure_count),
            _format_ts(item.last_checked),
        )
    console.print(table)


@proxy.command("remove")
@click.argument("proxy_id", type=int)
@click.pass_context
def proxy_remove(ctx: click.Context, proxy_id: int) -> None:
    """Delete a proxy."""

    async def body(container: DependencyContainer) -> bool:
        assert container.repository is not None
        return await container.repository.delete_proxy(proxy_id)

    if not _run(ctx, body):
        _fail(f"proxy {proxy_id} not found")
    console.print(f"[green]Removed proxy {proxy_id}[/green]")


@proxy.command("check")
@click.argument("proxy_id", type=int, required=False)
@click.pass_context
def proxy_check(ctx: click.Context, proxy_id: Optional[int]) -> None:
    """Health-check one proxy, or every proxy, and record the outcome."""

    async def body(container: DependencyContainer) -> tuple:
        assert container.repository is not None and container.proxy_manager is not None
        if proxy_id is None:
            proxies = await container.repository.list_proxies()
        else:
            found = await container.repository.get_proxy(proxy_id)
            if found is None:
                return [], {}
            proxies = [found]
        results = await container.proxy_manager.health_checker.check_all(proxies)
        return proxies, results

    proxies, results = _run(ctx, body)
    if proxy_id is not None and not proxies:
        _fail(f"proxy {proxy_id} not found")
    table = Table(title="Proxy health")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Address")
    table.add_column("Healthy")
    for item in proxies:
        healthy = results.get(item.id, False)
        table.add_row(str(item.id), item.address, "[green]yes[/green]" if healthy else "[red]no[/red]")
    console.print(table)


# ----------------------------------------------------------------------
# Products
# ----------------------------------------------------------------------


@cli.group()
def product() -> None:
    """Browse and review harvested products."""


@product.command("list")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(1, MAX_PRODUCT_PAGE))
@click.option("--offset", default=0, type=click.IntRange(min=0))
@click.option("--brand", default=None)
@click.option("--catalog", default=None)
@click.option("--in-stock/--out-of-stock", "in_stock", default=None, help="Filter on availability")
@click.option("--search", default=None, help="Match against name and design keywords")
@click.option("--status", "statuses", multiple=True, type=click.Choice([s.value for s in ProductStatus]))
@click.pass_context
def product_list(
    ctx: click.Context,
    limit: int,
    offset: int,
    brand: Optional[str],
    catalog: Optional[str],
    in_stock: Optional[bool],
    search: Optional[str],
    statuses: Tuple[str, ...],
) -> None:
    """List products, best sellers first."""

    async def body(container: DependencyContainer) -> tuple:
        assert container.repository is not None
        return await container.repository.list_products(
            limit=limit,
            offset=offset,
            brand=brand,
            catalog=catalog,
            in_stock=in_stock,
            search=search,
            statuses=list(statuses) or None,
        )

    products, total = _run(ctx, body)
    table = Table(title="Products")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name", overflow="fold")
    table.add_column("Brand")
    table.add_column("Price", justify="right")
    table.add_column("Rank", justify="right")
    table.add_column("Stock")
    table.add_column("Status")
    for item in products:
        price = item.sale_price if item.sale_price is not None else item.list_price
        table.add_row(
            str(item.id),
            escape(item.name or item.elastic_id),
            escape(item.brand or "-"),
            f"{price:.2f}" if price is not None else "-",
            str(item.sale_rank) if item.sale_rank is not None else "-",
            "-" if item.in_stock is None else ("yes" if item.in_stock else "no"),
            _PRODUCT_STYLES.get(item.status, item.status),
        )
    console.print(table)
    console.print(f"Showing {len(products)} of {total}")


@product.command("show")
@click.argument("product_id", type=int, required=False)
@click.option("--elastic-id", default=None, help="Look the product up by its upstream id")
@click.pass_context
def product_show(ctx: click.Context, product_id: Optional[int], elastic_id: Optional[str]) -> None:
    """Show one product."""
    if (product_id is None) == (elastic_id is None):
        _fail("give either a product id or --elastic-id")

    async def body(container: DependencyContainer) -> Optional[Product]:
        assert container.repository is not None
        if elastic_id is not None:
            return await container.repository.get_product(elastic_id)
        return await container.repository.get_product_by_id(product_id)

    found = _run(ctx, body)
    if found is None:
        _fail(f"product {product_id if elastic_id is None else elastic_id} not found")
    console.print(
        Panel(
            f"Upstream id: {escape(found.elastic_id)}\n"
            f"Name: {escape(found.name or '-')}\n"
            f"Brand: {escape(found.brand or '-')}\n"
            f"Catalog: {escape(found.catalog or '-')}\n"
            f"Artist: {escape(found.artist or '-')}\n"
            f"Rating: {found.rating if found.rating is not None else '-'}\n"
            f"List price: {found.list_price if found.list_price is not None else '-'}\n"
            f"Sale price: {found.sale_price if found.sale_price is not None else '-'}\n"
            f"Sale rank: {found.sale_rank if found.sale_rank is not None else '-'}\n"
            f"In stock: {'-' if found.in_stock is None else found.in_stock}\n"
            f"Keywords: {escape(found.design_keywords or '-')}\n"
            f"Status: {_PRODUCT_STYLES.get(found.status, found.status)}",
            title=f"Product {found.id}",
        )
    )


@product.command("stats")
@click.pass_context
def product_stats(ctx: click.Context) -> None:
    """Summarise the stored products."""

    async def body(container: DependencyContainer) -> dict:
        assert container.repository is not None
        return await container.repository.get_product_stats()

    stats = _run(ctx, body)
    table = Table(title="Product statistics")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(stats["total"]))
    table.add_row("In stock", str(stats["in_stock"]))
    table.add_row("Brands", str(stats["brands_count"]))
    for status, count in stats["status_breakdown"].items():
        table.add_row(f"Status: {escape(status)}", str(count))
    console.print(table)


@product.command("set-status")
@click.argument("product_id", type=int)
@click.argument("status", type=click.Choice([s.value for s in ProductStatus]))
@click.pass_context
def product_set_status(ctx: click.Context, product_id: int, status: str) -> None:
    """Record the review status of a product."""

    async def body(container: DependencyContainer) -> Product:
        assert container.repository is not None
        return await container.repository.update_product_status(product_id, status)

    updated = _run(ctx, body)
    console.print(f"[green]Product {updated.id} is now {updated.status}[/green]")


@product.command("delete")
@click.argument("product_id", type=int)
@click.pass_context
def product_delete(ctx: click.Context, product_id: int) -> None:
    """Delete a product."""

    async def body(container: DependencyContainer) -> bool:
        assert container.repository is not None
        return await container.repository.delete_product(product_id)

    if not _run(ctx, body):
        _fail(f"product {product_id} not found")
    console.print(f"[green]Deleted product {product_id}[/green]")


# ----------------------------------------------------------------------
# Payload overrides
# ----------------------------------------------------------------------


@cli.group()
def overrides() -> None:
    """Manage search payload overrides."""


@overrides.command("show")
@click.pass_context
def overrides_show(ctx: click.Context) -> None:
    """Print the stored overrides."""

    async def body(container: DependencyContainer) -> dict:
        assert container.repository is not None
        return await container.repository.get_payload_overrides()

    console.print_json(json.dumps(_run(ctx, body)))


@overrides.command("set")
@click.argument("value", required=False)
@click.option("--file", "file_", type=click.File("r"), help="Read the overrides JSON from a file")
@click.pass_context
def overrides_set(ctx: click.Context, value: Optional[str], file_: Optional[Any]) -> None:
    """Replace the overrides with a JSON object."""
    raw = file_.read() if file_ is not None else value
    if not raw:
        _fail("provide the overrides as an argument or with --file")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        _fail(f"invalid JSON: {e}")
    if not isinstance(parsed, dict):
        _fail("overrides must be a JSON object")

    async def body(container: DependencyContainer) -> None:
        assert container.repository is not None
        await container.repository.update_payload_overrides(parsed)

    _run(ctx, body)
    console.print("[green]Payload overrides updated[/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
