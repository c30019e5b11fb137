"""Helpers for applying django-fsm transitions inside services."""

from __future__ import annotations

from typing import Any

from django.db import models

from django_fsm import TransitionNotAllowed

from escrow.exceptions import InvalidStateTransitionError


def apply_transition(instance: models.Model, transition: str, *args: Any, **kwargs: Any) -> None:
    """
    Call a django-fsm transition method, translating TransitionNotAllowed.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed from
            the instance's current state (or a condition fails)

    Note: Does not save - caller must save after calling.
    """
    current_state = instance.state
    try:
        getattr(instance, transition)(*args, **kwargs)
    except TransitionNotAllowed:
        model_name = type(instance).__name__
        raise InvalidStateTransitionError(
            f"Cannot {transition} {model_name} {instance.pk} from '{current_state}' state",
            details={
                "entity": model_name.lower(),
                "entity_id": str(instance.pk),
                "current_state": current_state,
                "transition": transition,
            },
        )
