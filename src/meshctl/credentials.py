"""Credential negotiation between the operator and the existing service."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

import typer

from .errors import AccountNotConfirmedError
from .models import EMAIL_ENV, PASSWORD_ENV, Credentials


class Prompter(Protocol):
    """Interactive console capability used to collect credentials."""

    def notify(self, message: str) -> None:
        """Show *message* to the operator."""
        ...

    def confirm(self, question: str) -> bool:
        """Ask a yes/no *question*."""
        ...

    def ask(self, question: str, *, hide_input: bool = False) -> str:
        """Ask for a value, masking the input when *hide_input* is set."""
        ...


class ConsolePrompter:
    """Prompt on the terminal with Typer."""

    def notify(self, message: str) -> None:
        """Print *message*."""
        typer.echo(message)

    def confirm(self, question: str) -> bool:
        """Ask a yes/no question (defaults to no)."""
        return bool(typer.confirm(question, default=False))

    def ask(self, question: str, *, hide_input: bool = False) -> str:
        """Prompt for a non-empty value."""
        return str(typer.prompt(question, hide_input=hide_input)).strip()


@dataclass(slots=True)
class PresetPrompter:
    """Answer credential prompts from values supplied up front.

    Anything not preset is delegated to *fallback*. Supplying a value counts as
    an affirmative answer to the matching "change?" question, and providing
    both values confirms that an account exists.
    """

    fallback: Prompter
    email: str | None = None
    password: str | None = None

    def notify(self, message: str) -> None:
        """Forward *message* to the fallback prompter."""
        self.fallback.notify(message)

    def confirm(self, question: str) -> bool:
        """Answer change/account questions from the presets."""
        lowered = question.lower()
        if "email" in lowered and self.email is not None:
            return True
        if "password" in lowered and self.password is not None:
            return True
        if "account" in lowered and self.email is not None and self.password is not None:
            return True
        return self.fallback.confirm(question)

    def ask(self, question: str, *, hide_input: bool = False) -> str:
        """Return the preset value matching *question*."""
        lowered = question.lower()
        if "password" in lowered and self.password is not None:
            return self.password
        if "email" in lowered and self.email is not None:
            return self.email
        return self.fallback.ask(question, hide_input=hide_input)


def negotiate(
    prompter: Prompter,
    *,
    service_exists: bool,
    environment: Mapping[str, str] | None = None,
    register_url: str = "",
) -> Credentials:
    """Decide which credentials the service should run with.

    For a first install the operator must confirm that an account exists before
    being asked for an email and password. When the service is already
    configured its stored values are kept unless the operator chooses to
    change the email, the password, or both.
    """
    if not service_exists:
        location = f" at: {register_url}" if register_url else ""
        prompter.notify(
            "Service does not exist yet. Before proceeding, please ensure you have "
            f"created an account{location}"
        )
        if not prompter.confirm("Have you created an account?"):
            raise AccountNotConfirmedError("Please create an account before proceeding.")
        email = prompter.ask("Enter your email")
        password = prompter.ask("Enter your password", hide_input=True)
        return Credentials(email=email, password=password)

    stored = dict(environment or {})
    email = stored.get(EMAIL_ENV, "")
    password = stored.get(PASSWORD_ENV, "")

    if not email:
        email = prompter.ask("Enter your email")
    elif prompter.confirm("Do you want to change your email?"):
        email = prompter.ask("Enter your new email")

    if not password:
        password = prompter.ask("Enter your password", hide_input=True)
    elif prompter.confirm("Do you want to change your password?"):
        password = prompter.ask("Enter your new password", hide_input=True)

    return Credentials(email=email, password=password)


__all__ = ["ConsolePrompter", "PresetPrompter", "Prompter", "negotiate"]
