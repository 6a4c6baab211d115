import click
from flask.cli import with_appcontext

from telehealth_billing.services.analytics import AnalyticsService
from telehealth_billing.services.recurring import RecurringBillingService
from telehealth_billing.services.tokens import CallerContext, issue_caller_token


def _fail_on_error(result):
    if not result.ok:
        raise click.ClickException(f"{result.message} (status {result.status_code})")
    return result


@click.group()
def billing():
    """Billing jobs and ops utilities."""


@billing.command("run-recurring")
@click.option("--as-of", type=click.DateTime(), default=None, help="Bill subscriptions due on or before this time (UTC).")
@with_appcontext
def run_recurring(as_of):
    """Charge every subscription whose next billing date has arrived."""
    result = _fail_on_error(RecurringBillingService().process_due_subscriptions(CallerContext.system(), as_of=as_of))
    s = result.data
    click.echo(f"Recurring run: processed={s.processed} succeeded={s.succeeded} failed={s.failed} skipped={s.skipped}")
    for err in s.errors:
        click.echo(f"  {err}", err=True)


@billing.command("retry-failed")
@with_appcontext
def retry_failed():
    """Retry failed payments that are still under the retry limit."""
    result = _fail_on_error(RecurringBillingService().retry_failed_payments(CallerContext.system()))
    s = result.data
    click.echo(f"Retry run: processed={s.processed} succeeded={s.succeeded} failed={s.failed} skipped={s.skipped}")


@billing.command("export-analytics")
@click.option("--format", "fmt", type=click.Choice(["csv", "json"]), default="json")
@click.option("--start", type=click.DateTime(), default=None)
@click.option("--end", type=click.DateTime(), default=None)
@click.option("--output", type=click.Path(dir_okay=False, writable=True), default=None,
              help="File to write; defaults to the generated filename.")
@with_appcontext
def export_analytics(fmt, start, end, output):
    result = _fail_on_error(AnalyticsService().export_analytics(CallerContext.system(), fmt, start, end))
    export = result.data
    path = output or export.filename
    with open(path, "wb") as fh:
        fh.write(export.content)
    click.echo(f"Wrote {len(export.content)} bytes to {path}")


@billing.command("issue-token")
@click.option("--user-id", type=int, required=True)
@click.option("--role", type=click.Choice(["user", "admin", "system"]), default="user")
@with_appcontext
def issue_token(user_id, role):
    """Print a signed caller token for the given identity."""
    click.echo(issue_caller_token(CallerContext(user_id=user_id, role=role)))


def register_cli(app):
    app.cli.add_command(billing)
