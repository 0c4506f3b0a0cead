"""
Main CLI entry point for Marketplace Job Orchestrator

Provides command-line interface for the job lifecycle, bids, change orders
and expiration sweeps.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable, Awaitable

import click

from ..core.config import OrchestratorConfig
from ..core.exceptions import JobOrchestratorError
from ..core.orchestrator import JobOrchestrator
from ..models.result import OperationResult
from ..utils.logger import setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path (YAML)')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.option('--json', 'output_json', is_flag=True, help='Print results as JSON')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose, output_json):
    """Marketplace Job Orchestrator CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    # Load configuration: file, then environment, then command-line overrides
    try:
        settings = OrchestratorConfig.from_yaml(config) if config else OrchestratorConfig.from_env()
        if database_url:
            settings.database_url = database_url
        if log_level:
            settings.log_level = log_level.upper()
            settings.validate()
    except JobOrchestratorError as e:
        raise click.ClickException(e.message)

    # Set up logging
    logger = setup_logger("marketplace_job_orchestrator", level=settings.log_level,
                          structured=settings.structured_logging and not verbose)
    ctx.obj['logger'] = logger

    # Store configuration
    ctx.obj['config'] = settings
    ctx.obj['verbose'] = verbose
    ctx.obj['json'] = output_json


@cli.group()
@click.pass_context
def job(ctx):
    """Job and bid commands"""
    pass


@cli.group('change-order')
@click.pass_context
def change_order(ctx):
    """Change order and escrow commands"""
    pass


@cli.group()
@click.pass_context
def sweep(ctx):
    """Expiration sweep commands"""
    pass


# Job Commands
@job.command('create')
@click.argument('customer_id')
@click.argument('title')
@click.option('--description', required=True, help='What needs to be done')
@click.option('--category', default='general', help='Service category')
@click.option('--priority', type=click.Choice(['low', 'medium', 'high', 'urgent']), default='medium',
              help='Job priority')
@click.option('--location', help='Service location')
@click.option('--vehicle-id', help='Vehicle identifier')
@click.option('--customer-name', help='Customer display name')
@click.option('--estimated-cost', help='Customer price estimate')
@click.option('--mechanic', 'requested_mechanic_id', help='Book this mechanic directly')
@click.option('--job-id', help='Explicit job id (makes retries idempotent)')
@click.pass_context
def create_job(ctx, customer_id, title, description, category, priority, location, vehicle_id,
               customer_name, estimated_cost, requested_mechanic_id, job_id):
    """Post a new job"""

    async def _create(orchestrator):
        result = await orchestrator.create_job(
            customer_id, title, description,
            category=category,
            priority=priority,
            location=location,
            vehicle_id=vehicle_id,
            customer_name=customer_name,
            estimated_cost=estimated_cost,
            requested_mechanic_id=requested_mechanic_id,
            job_id=job_id
        )
        return _report(ctx, result, "Job posted", _display_job_details)

    _run(ctx, _create)


@job.command('bid')
@click.argument('job_id')
@click.argument('mechanic_id')
@click.argument('price')
@click.option('--message', help='Message to the customer')
@click.option('--mechanic-name', help='Mechanic display name')
@click.option('--duration', 'estimated_duration_minutes', type=int, help='Estimated duration in minutes')
@click.option('--bid-id', help='Explicit bid id (makes retries idempotent)')
@click.pass_context
def submit_bid(ctx, job_id, mechanic_id, price, message, mechanic_name, estimated_duration_minutes, bid_id):
    """Submit a bid on a job"""

    async def _bid(orchestrator):
        result = await orchestrator.submit_bid(
            job_id, mechanic_id, price,
            message=message,
            mechanic_name=mechanic_name,
            estimated_duration_minutes=estimated_duration_minutes,
            bid_id=bid_id
        )
        return _report(ctx, result, "Bid submitted", _display_bid)

    _run(ctx, _bid)


@job.command('accept')
@click.argument('bid_id')
@click.option('--customer-id', help='Customer accepting the bid')
@click.pass_context
def accept_bid(ctx, bid_id, customer_id):
    """Accept a bid (declines all other pending bids on the job)"""

    async def _accept(orchestrator):
        result = await orchestrator.accept_bid(bid_id, customer_id=customer_id)
        return _report(ctx, result, "Bid accepted", _display_bid)

    _run(ctx, _accept)


@job.command('reject')
@click.argument('bid_id')
@click.option('--customer-id', help='Customer rejecting the bid')
@click.option('--reason', help='Reason shown to the mechanic')
@click.pass_context
def reject_bid(ctx, bid_id, customer_id, reason):
    """Reject a bid"""

    async def _reject(orchestrator):
        result = await orchestrator.reject_bid(bid_id, customer_id=customer_id, reason=reason)
        return _report(ctx, result, "Bid rejected", _display_bid)

    _run(ctx, _reject)


@job.command('withdraw')
@click.argument('bid_id')
@click.argument('mechanic_id')
@click.pass_context
def withdraw_bid(ctx, bid_id, mechanic_id):
    """Withdraw your own pending bid"""

    async def _withdraw(orchestrator):
        result = await orchestrator.withdraw_bid(bid_id, mechanic_id)
        return _report(ctx, result, "Bid withdrawn", _display_bid)

    _run(ctx, _withdraw)


@job.command('schedule')
@click.argument('job_id')
@click.argument('scheduled_date')
@click.argument('scheduled_time')
@click.option('--duration', 'estimated_duration_minutes', type=int, help='Estimated duration in minutes')
@click.option('--location', help='Service location')
@click.option('--instructions', 'special_instructions', help='Special instructions for the mechanic')
@click.option('--customer-id', help='Customer scheduling the job')
@click.pass_context
def schedule_job(ctx, job_id, scheduled_date, scheduled_time, estimated_duration_minutes, location,
                 special_instructions, customer_id):
    """Schedule an accepted job"""

    async def _schedule(orchestrator):
        result = await orchestrator.schedule_job(
            job_id, scheduled_date, scheduled_time,
            estimated_duration_minutes=estimated_duration_minutes,
            location=location,
            special_instructions=special_instructions,
            customer_id=customer_id
        )
        return _report(ctx, result, "Job scheduled", _display_job_details)

    _run(ctx, _schedule)


@job.command('confirm')
@click.argument('job_id')
@click.argument('mechanic_id')
@click.option('--decline', is_flag=True, help='Decline the proposed schedule')
@click.pass_context
def confirm_schedule(ctx, job_id, mechanic_id, decline):
    """Confirm (or decline) a proposed schedule"""

    async def _confirm(orchestrator):
        result = await orchestrator.confirm_schedule(job_id, mechanic_id, accept=not decline)
        return _report(ctx, result, "Schedule declined" if decline else "Schedule confirmed",
                       _display_job_details)

    _run(ctx, _confirm)


@job.command('start')
@click.argument('job_id')
@click.argument('mechanic_id')
@click.pass_context
def start_job(ctx, job_id, mechanic_id):
    """Start work on a scheduled job"""

    async def _start(orchestrator):
        result = await orchestrator.start_job(job_id, mechanic_id)
        return _report(ctx, result, "Job started", _display_job_details)

    _run(ctx, _start)


@job.command('complete')
@click.argument('job_id')
@click.argument('mechanic_id')
@click.option('--work', 'work_completed', help='Summary of the work performed')
@click.option('--notes', 'completion_notes', help='Completion notes')
@click.option('--photo', 'completion_photos', multiple=True, help='Completion photo URL (repeatable)')
@click.pass_context
def complete_job(ctx, job_id, mechanic_id, work_completed, completion_notes, completion_photos):
    """Complete an in-progress job"""

    async def _complete(orchestrator):
        result = await orchestrator.complete_job(
            job_id, mechanic_id,
            work_completed=work_completed,
            completion_notes=completion_notes,
            completion_photos=list(completion_photos)
        )
        return _report(ctx, result, "Job completed", _display_job_details)

    _run(ctx, _complete)


@job.command('cancel')
@click.argument('job_id')
@click.argument('customer_id')
@click.option('--reason', help='Cancellation reason')
@click.pass_context
def cancel_job(ctx, job_id, customer_id, reason):
    """Cancel a job that has not accepted a bid"""

    async def _cancel(orchestrator):
        result = await orchestrator.cancel_job(job_id, customer_id, reason=reason)
        return _report(ctx, result, "Job cancelled", _display_job_details)

    _run(ctx, _cancel)


@job.command('delete')
@click.argument('job_id')
@click.confirmation_option(prompt='Delete this job and all of its bids?')
@click.pass_context
def delete_job(ctx, job_id):
    """Delete a job and its bids (administrative)"""

    async def _delete(orchestrator):
        result = await orchestrator.delete_job(job_id)
        return _report(ctx, result, "Job deleted")

    _run(ctx, _delete)


@job.command('note')
@click.argument('job_id')
@click.argument('author_id')
@click.option('--text', help='Note text')
@click.option('--photo-url', help='Photo URL')
@click.option('--author-name', help='Author display name')
@click.pass_context
def add_job_note(ctx, job_id, author_id, text, photo_url, author_name):
    """Add a note or photo to a job"""

    async def _note(orchestrator):
        result = await orchestrator.add_job_note(job_id, author_id, text=text, photo_url=photo_url,
                                                 author_name=author_name)
        return _report(ctx, result, "Note added", _display_job_details)

    _run(ctx, _note)


@job.command('show')
@click.argument('job_id')
@click.option('--bids', 'show_bids', is_flag=True, help='Show bids on the job')
@click.option('--timeline', 'show_timeline', is_flag=True, help='Show the progression timeline')
@click.pass_context
def show_job(ctx, job_id, show_bids, show_timeline):
    """Show job details"""

    async def _show(orchestrator):
        job = await orchestrator.get_job(job_id)
        if job is None:
            click.echo(f"Job {job_id} not found", err=True)
            return False

        bids = await orchestrator.get_bids_by_job(job_id) if show_bids else []
        if ctx.obj['json']:
            payload = job.to_dict()
            if show_bids:
                payload["bids"] = [bid.to_dict() for bid in bids]
            _echo_json(payload)
            return True

        _display_job_details(job, ctx.obj['verbose'])
        remaining = await orchestrator.get_time_remaining(job_id)
        if remaining and not remaining["expired"]:
            click.echo(f"Expires in: {remaining['hours']}h {remaining['minutes']}m")
        if show_timeline or ctx.obj['verbose']:
            _display_timeline(job)
        if show_bids:
            _display_bids_table(bids)
        return True

    _run(ctx, _show)


@job.command('list')
@click.option('--customer-id', help='Only jobs posted by this customer')
@click.option('--mechanic-id', help='Only jobs assigned to this mechanic')
@click.option('--status', type=click.Choice(['posted', 'bidding', 'accepted', 'scheduled', 'confirmed',
                                              'in_progress', 'pending', 'completed', 'cancelled']),
              help='Only jobs in this status')
@click.option('--limit', type=int, default=20, help='Limit number of jobs to show')
@click.option('--since', type=click.DateTime(), help='Only jobs created at or after this UTC time')
@click.option('--until', type=click.DateTime(), help='Only jobs created at or before this UTC time')
@click.pass_context
def list_jobs(ctx, customer_id, mechanic_id, status, limit, since, until):
    """List jobs, newest first"""

    async def _list(orchestrator):
        jobs = await orchestrator.list_jobs(customer_id=customer_id, mechanic_id=mechanic_id,
                                            status=status, limit=limit,
                                            created_from=_as_utc(since), created_to=_as_utc(until))
        if ctx.obj['json']:
            _echo_json([job.to_dict() for job in jobs])
        else:
            _display_jobs_table(jobs, ctx.obj['verbose'])
        return True

    _run(ctx, _list)


@job.command('stats')
@click.option('--customer-id', help='Only jobs posted by this customer')
@click.option('--mechanic-id', help='Only jobs assigned to this mechanic')
@click.pass_context
def job_stats(ctx, customer_id, mechanic_id):
    """Show job statistics"""

    async def _stats(orchestrator):
        stats = await orchestrator.get_job_stats(customer_id=customer_id, mechanic_id=mechanic_id)
        if ctx.obj['json']:
            _echo_json(stats)
            return "error" not in stats

        click.echo(f"Total jobs: {stats.get('total', 0)}")
        for status, count in sorted(stats.get('by_status', {}).items()):
            click.echo(f"  {status}: {count}")
        if ctx.obj['verbose']:
            click.echo("By date:")
            for day, count in sorted(stats.get('by_date', {}).items()):
                click.echo(f"  {day}: {count}")
        click.echo(f"Recent jobs: {len(stats.get('recent_jobs', []))}")
        return "error" not in stats

    _run(ctx, _stats)


# Change Order Commands
@change_order.command('create')
@click.argument('job_id')
@click.argument('mechanic_id')
@click.argument('title')
@click.option('--description', help='Description of the additional work')
@click.option('--amount', 'total_amount', help='Total amount (when no line items are given)')
@click.option('--item', 'items', multiple=True,
              help='Line item as "description:quantity:unit_price" (repeatable)')
@click.option('--mechanic-name', help='Mechanic display name')
@click.option('--change-order-id', help='Explicit change order id (makes retries idempotent)')
@click.pass_context
def create_change_order(ctx, job_id, mechanic_id, title, description, total_amount, items, mechanic_name,
                        change_order_id):
    """Request additional work on a job"""
    line_items = [_parse_line_item(item) for item in items]

    async def _create(orchestrator):
        result = await orchestrator.create_change_order(
            job_id, mechanic_id, title,
            description=description,
            line_items=line_items,
            total_amount=total_amount,
            mechanic_name=mechanic_name,
            change_order_id=change_order_id
        )
        return _report(ctx, result, "Change order created", _display_change_order)

    _run(ctx, _create)


@change_order.command('approve')
@click.argument('change_order_id')
@click.argument('customer_id')
@click.pass_context
def approve_change_order(ctx, change_order_id, customer_id):
    """Approve a pending change order"""

    async def _approve(orchestrator):
        result = await orchestrator.approve_change_order(change_order_id, customer_id)
        return _report(ctx, result, "Change order approved", _display_change_order)

    _run(ctx, _approve)


@change_order.command('reject')
@click.argument('change_order_id')
@click.argument('customer_id')
@click.option('--reason', help='Reason shown to the mechanic')
@click.pass_context
def reject_change_order(ctx, change_order_id, customer_id, reason):
    """Reject a pending change order"""

    async def _reject(orchestrator):
        result = await orchestrator.reject_change_order(change_order_id, customer_id, reason=reason)
        return _report(ctx, result, "Change order rejected", _display_change_order)

    _run(ctx, _reject)


@change_order.command('cancel')
@click.argument('change_order_id')
@click.argument('mechanic_id')
@click.option('--reason', help='Cancellation reason')
@click.pass_context
def cancel_change_order(ctx, change_order_id, mechanic_id, reason):
    """Cancel your own pending change order"""

    async def _cancel(orchestrator):
        result = await orchestrator.cancel_change_order(change_order_id, mechanic_id, reason=reason)
        return _report(ctx, result, "Change order cancelled", _display_change_order)

    _run(ctx, _cancel)


@change_order.command('pay')
@click.argument('change_order_id')
@click.option('--method', 'payment_method', help='Payment method reference')
@click.option('--customer-id', help='Customer paying for the change order')
@click.pass_context
def pay_change_order(ctx, change_order_id, payment_method, customer_id):
    """Pay an approved change order into escrow"""

    async def _pay(orchestrator):
        result = await orchestrator.process_change_order_payment(change_order_id, payment_method=payment_method,
                                                                 customer_id=customer_id)
        return _report(ctx, result, "Payment held in escrow", _display_payment)

    _run(ctx, _pay)


@change_order.command('release')
@click.argument('change_order_id')
@click.pass_context
def release_change_order(ctx, change_order_id):
    """Release an escrowed change order payment"""

    async def _release(orchestrator):
        result = await orchestrator.release_escrow_payment(change_order_id)
        return _report(ctx, result, "Payment released", _display_payment)

    _run(ctx, _release)


@change_order.command('expire')
@click.argument('job_id')
@click.pass_context
def expire_change_orders(ctx, job_id):
    """Expire every pending change order of a job"""

    async def _expire(orchestrator):
        result = await orchestrator.expire_pending_change_orders(job_id)
        if result.ok and not ctx.obj['json']:
            click.echo(f"Expired {len(result.entity)} change order(s)")
            return True
        return _report(ctx, result, "Change orders expired")

    _run(ctx, _expire)


@change_order.command('list')
@click.argument('job_id')
@click.pass_context
def list_change_orders(ctx, job_id):
    """List the change orders of a job"""

    async def _list(orchestrator):
        change_orders = await orchestrator.get_change_orders_by_job(job_id)
        if ctx.obj['json']:
            _echo_json([co.to_dict() for co in change_orders])
            return True
        if not change_orders:
            click.echo("No change orders found")
        for co in change_orders:
            _display_change_order(co, ctx.obj['verbose'])
            click.echo()
        return True

    _run(ctx, _list)


@change_order.command('stats')
@click.option('--mechanic-id', help='Only change orders requested by this mechanic')
@click.option('--customer-id', help='Only change orders on this customer\'s jobs')
@click.pass_context
def change_order_stats(ctx, mechanic_id, customer_id):
    """Show change order statistics"""

    async def _stats(orchestrator):
        stats = await orchestrator.get_change_order_stats(mechanic_id=mechanic_id, customer_id=customer_id)
        if ctx.obj['json']:
            _echo_json(stats)
            return "error" not in stats

        click.echo(f"Total change orders: {stats.get('total', 0)}")
        for key, value in stats.items():
            if key not in ("total", "total_amount", "average_amount"):
                click.echo(f"  {key}: {value}")
        click.echo(f"Total amount: ${stats.get('total_amount', 0)}")
        click.echo(f"Average amount: ${stats.get('average_amount', 0)}")
        return "error" not in stats

    _run(ctx, _stats)


# Sweep Commands
@sweep.command('run')
@click.pass_context
def run_sweep(ctx):
    """Run one expiration sweep"""

    async def _sweep(orchestrator):
        result = await orchestrator.run_expiration_sweep()
        return _report(ctx, result, "Sweep finished", _display_sweep_report)

    _run(ctx, _sweep, sweep_on_start=False)


@sweep.command('serve')
@click.pass_context
def serve_sweeps(ctx):
    """Run timed expiration sweeps until interrupted"""
    orchestrator = _build_orchestrator(ctx)

    async def _serve():
        await orchestrator.start(enable_sweep_timer=True)
        click.echo(f"Sweeping every {orchestrator.config.sweep_interval_seconds:g}s. Press Ctrl+C to stop.")
        try:
            await orchestrator.wait_for_shutdown()
        finally:
            await orchestrator.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("Stopped.")
    except JobOrchestratorError as e:
        click.echo(f"Error: {e.message}", err=True)
        ctx.exit(1)


@cli.command('health')
@click.pass_context
def health(ctx):
    """Show system health"""

    async def _health(orchestrator):
        status = await orchestrator.get_system_health()
        if ctx.obj['json']:
            _echo_json(status)
        else:
            _display_system_health(status, ctx.obj['verbose'])
        return status["overall_status"] != "critical"

    _run(ctx, _health, sweep_on_start=False)


# Helper Functions
def _build_orchestrator(ctx) -> JobOrchestrator:
    """Return the orchestrator supplied by the caller, or build one from configuration"""
    orchestrator = ctx.obj.get('orchestrator')
    if orchestrator is None:
        orchestrator = JobOrchestrator(config=ctx.obj['config'])
        ctx.obj['orchestrator'] = orchestrator
    return orchestrator


def _run(ctx, action: Callable[[JobOrchestrator], Awaitable[bool]], sweep_on_start: bool = True):
    """Run ``action`` against a started orchestrator; exit non-zero when it reports failure"""

    async def _inner():
        orchestrator = _build_orchestrator(ctx)
        if sweep_on_start:
            await orchestrator.start(enable_sweep_timer=False)
        else:
            await orchestrator.store.initialize()
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.stop()

    try:
        ok = asyncio.run(_inner())
    except JobOrchestratorError as e:
        click.echo(f"Error: {e.message}", err=True)
        ctx.exit(1)

    if not ok:
        ctx.exit(1)


def _report(ctx, result: OperationResult, success_message: str,
            display: Optional[Callable[[Any, bool], None]] = None) -> bool:
    """Print an OperationResult; returns its success flag"""
    if ctx.obj['json']:
        _echo_json(result.to_dict())
        return result.ok

    if not result.ok:
        click.echo(f"Error ({result.error_kind}): {result.message}", err=True)
        return False

    click.echo(f"{success_message}!")
    if display and result.entity is not None:
        display(result.entity, ctx.obj['verbose'])
    return True


def _echo_json(payload: Any):
    click.echo(json.dumps(payload, indent=2, default=str))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive command-line times as UTC"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _parse_line_item(raw: str) -> Dict[str, Any]:
    parts = raw.rsplit(":", 2)
    if len(parts) != 3:
        raise click.BadParameter(f"expected description:quantity:unit_price, got {raw!r}", param_hint="--item")
    description, quantity, unit_price = parts
    return {"description": description, "quantity": quantity, "unit_price": unit_price}


def _display_job_details(job, verbose: bool):
    """Display detailed job information"""
    click.echo(f"Job ID: {job.job_id}")
    click.echo(f"Title: {job.title}")
    click.echo(f"Status: {job.status.value}")
    click.echo(f"Customer: {job.customer_id}")
    click.echo(f"Created: {job.created_at.isoformat()}")

    if job.mechanic_id:
        click.echo(f"Mechanic: {job.mechanic_name or job.mechanic_id}")

    if job.price is not None:
        click.echo(f"Price: ${job.price}")

    if job.scheduled_date:
        click.echo(f"Scheduled: {job.scheduled_date} {job.scheduled_time or ''}".rstrip())

    if job.is_expiring and job.expiring_at:
        click.echo(f"Expiring at: {job.expiring_at.isoformat()}")

    if job.cancellation_reason:
        click.echo(f"Cancellation reason: {job.cancellation_reason}")

    if job.additional_work_amount:
        click.echo(f"Additional work: ${job.additional_work_amount} (paid ${job.paid_additional_work_amount})")

    if verbose:
        click.echo(f"Description: {job.description}")
        click.echo(f"Category: {job.category}")
        click.echo(f"Priority: {job.priority}")
        if job.change_orders:
            click.echo(f"Change orders: {', '.join(job.change_orders)}")


def _display_timeline(job):
    """Display the progression timeline"""
    click.echo("Timeline:")
    for entry in job.progression_timeline:
        click.echo(f"  {entry.timestamp.isoformat()[:19]}  {entry.status:<24} {entry.description} ({entry.actor})")


def _display_jobs_table(jobs: list, verbose: bool):
    """Display jobs in table format"""
    if not jobs:
        click.echo("No jobs found")
        return

    # Header
    if verbose:
        click.echo(f"{'Job ID':<36} {'Title':<30} {'Status':<12} {'Mechanic':<20} {'Created':<20}")
        click.echo("-" * 122)
    else:
        click.echo(f"{'Job ID':<36} {'Title':<30} {'Status':<12}")
        click.echo("-" * 80)

    # Rows
    for job in jobs:
        title = job.title[:29]
        if verbose:
            mechanic = (job.mechanic_name or job.mechanic_id or "-")[:19]
            created = job.created_at.isoformat()[:19]
            click.echo(f"{job.job_id:<36} {title:<30} {job.status.value:<12} {mechanic:<20} {created:<20}")
        else:
            click.echo(f"{job.job_id:<36} {title:<30} {job.status.value:<12}")


def _display_bid(bid, verbose: bool):
    """Display bid information"""
    click.echo(f"Bid ID: {bid.bid_id}")
    click.echo(f"Job ID: {bid.job_id}")
    click.echo(f"Mechanic: {bid.mechanic_name or bid.mechanic_id}")
    click.echo(f"Price: ${bid.price}")
    click.echo(f"Status: {bid.status.value}")
    if bid.reason:
        click.echo(f"Reason: {bid.reason}")
    if verbose and bid.message:
        click.echo(f"Message: {bid.message}")


def _display_bids_table(bids: List[Any]):
    """Display bids in table format"""
    if not bids:
        click.echo("No bids found")
        return

    click.echo(f"{'Bid ID':<36} {'Mechanic':<20} {'Price':<12} {'Status':<10}")
    click.echo("-" * 80)
    for bid in bids:
        mechanic = (bid.mechanic_name or bid.mechanic_id)[:19]
        click.echo(f"{bid.bid_id:<36} {mechanic:<20} {'$' + str(bid.price):<12} {bid.status.value:<10}")


def _display_change_order(change_order, verbose: bool):
    """Display change order information"""
    click.echo(f"Change Order ID: {change_order.change_order_id}")
    click.echo(f"Job ID: {change_order.job_id}")
    click.echo(f"Title: {change_order.title}")
    click.echo(f"Amount: ${change_order.total_amount}")
    click.echo(f"Status: {change_order.status.value}")
    if change_order.expires_at:
        click.echo(f"Expires: {change_order.expires_at.isoformat()}")
    if change_order.reason:
        click.echo(f"Reason: {change_order.reason}")
    if verbose:
        for item in change_order.line_items:
            click.echo(f"  - {item.description}: {item.quantity} x ${item.unit_price} = ${item.total_price}")


def _display_payment(payment, verbose: bool):
    """Display escrow payment information"""
    click.echo(f"Payment ID: {payment.payment_id}")
    click.echo(f"Change Order ID: {payment.change_order_id}")
    click.echo(f"Amount: ${payment.amount} {payment.currency}")
    click.echo(f"Status: {payment.status.value}")


def _display_sweep_report(report, verbose: bool):
    """Display expiration sweep results"""
    click.echo(f"Expired jobs: {len(report.expired_jobs)}")
    click.echo(f"Expiring jobs: {len(report.expiring_jobs)}")
    click.echo(f"Expired change orders: {len(report.expired_change_orders)}")
    if report.failures:
        click.echo(f"Failures: {len(report.failures)}")
    if verbose:
        for job_id in report.expired_jobs:
            click.echo(f"  expired: {job_id}")
        for job_id in report.expiring_jobs:
            click.echo(f"  expiring: {job_id}")
        for item_id, error in report.failures.items():
            click.echo(f"  failed: {item_id}: {error}")


def _display_system_health(health: Dict[str, Any], verbose: bool):
    """Display system health information"""
    click.echo(f"Overall Status: {health['overall_status'].upper()}")
    click.echo(f"Store Healthy: {health['store_healthy']}")
    click.echo()

    notifications = health['notifications']
    click.echo("Notifications:")
    click.echo(f"  Sent: {notifications['sent']}")
    click.echo(f"  Delivered: {notifications['delivered']}")
    click.echo(f"  Failed: {notifications['failed']}")
    click.echo()

    expiration = health['expiration']
    click.echo("Expiration:")
    click.echo(f"  Sweeps Run: {expiration['sweeps_run']}")

    if verbose:
        errors = health['errors']
        click.echo()
        click.echo("Errors:")
        click.echo(f"  Total: {errors['total_errors']}")
        for error_type, count in errors['error_counts'].items():
            click.echo(f"  {error_type}: {count}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
