"""Admin commands for the Pesapal integration.

    scholarpay register-ipn --url https://example.org/api/payments/pesapal/ipn
    scholarpay test-connection
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Optional

import typer

from scholarpay.config import Settings, settings
from scholarpay.domain.enums import IpnNotificationType
from scholarpay.domain.errors import AuthError, GatewayError, ValidationError
from scholarpay.domain.models import BillingAddress, OrderRequest
from scholarpay.logging import setup_logging
from scholarpay.providers.pesapal import PesapalClient
from scholarpay.utils.references import MerchantReferenceGenerator

app = typer.Typer(
    name="scholarpay",
    help="Pesapal gateway administration",
    add_completion=False,
)

logger = logging.getLogger(__name__)


def _client(cfg: Settings) -> PesapalClient:
    return PesapalClient(cfg)


@app.command("register-ipn")
def register_ipn(
    url: Optional[str] = typer.Option(None, "--url", help="IPN URL; defaults to PESAPAL_IPN_URL"),
    notification_type: IpnNotificationType = typer.Option(
        IpnNotificationType.GET, "--type", case_sensitive=False, help="How Pesapal should call the URL"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Register the IPN URL with Pesapal and print the notification id."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    target = url or settings.pesapal_ipn_url
    typer.echo(f"Registering IPN URL: {target}")
    try:
        registration = asyncio.run(_client(settings).register_notification_url(target, notification_type))
    except (AuthError, GatewayError) as exc:
        typer.secho(f"IPN registration failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    typer.secho("IPN registered successfully", fg=typer.colors.GREEN)
    typer.echo(f"  IPN ID:  {registration.notification_id}")
    typer.echo(f"  URL:     {registration.url or target}")
    typer.echo(f"  Status:  {registration.status}")
    typer.echo("Set PESAPAL_DEFAULT_NOTIFICATION_ID to the IPN ID above.")


def _configuration_problems(cfg: Settings) -> list[str]:
    problems = []
    if not cfg.pesapal_consumer_key:
        problems.append("PESAPAL_CONSUMER_KEY is not set")
    if not cfg.pesapal_consumer_secret:
        problems.append("PESAPAL_CONSUMER_SECRET is not set")
    if not cfg.pesapal_default_notification_id:
        problems.append("PESAPAL_DEFAULT_NOTIFICATION_ID is not set (run register-ipn)")
    if not cfg.pesapal_callback_url:
        problems.append("PESAPAL_CALLBACK_URL is not set")
    return problems


@app.command("test-connection")
def test_connection(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """Check configuration, authenticate, and validate a sample order locally."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    typer.echo(f"Environment: {settings.pesapal_environment}")
    typer.echo(f"API URL:     {settings.pesapal_api_url}")

    problems = _configuration_problems(settings)
    for problem in problems:
        typer.secho(f"  ! {problem}", fg=typer.colors.YELLOW)

    client = _client(settings)
    try:
        token = asyncio.run(client.authenticate())
    except (AuthError, GatewayError) as exc:
        typer.secho(f"Authentication failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho(f"Authenticated; token valid until {token.expires_at.isoformat()}", fg=typer.colors.GREEN)

    # Dry run: build and validate an order without submitting it
    order = OrderRequest(
        merchant_reference=MerchantReferenceGenerator(settings.merchant_reference_prefix).generate(),
        amount=Decimal("100"),
        currency=settings.pesapal_default_currency,
        description="Connection test order",
        callback_url=settings.pesapal_callback_url,
        notification_id=settings.pesapal_default_notification_id or None,
        billing_address=BillingAddress(
            email_address="test@example.com",
            first_name="Test",
            last_name="User",
            country_code=settings.pesapal_default_country_code,
        ),
    )
    try:
        order.validate()
    except ValidationError as exc:
        typer.secho(f"Sample order invalid: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Sample order {order.merchant_reference} passes validation")
    if problems:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
