"""
Model mixins providing reusable functionality for Django models.

This module contains abstract mixin classes that can be combined with
BaseModel to add specific functionality. They are generic infrastructure
classes with no booking or payment logic.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    OptimisticLockMixin: Version counter for compare-and-swap updates

Usage:
    from core.models import BaseModel
    from core.model_mixins import OptimisticLockMixin, UUIDPrimaryKeyMixin

    class Booking(UUIDPrimaryKeyMixin, OptimisticLockMixin, BaseModel):
        ...

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models
from django.db.models import F

if TYPE_CHECKING:
    from typing import Any


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Fields:
        id: UUIDField as primary key (auto-generated)

    Note:
        The id is assigned in Python before the first INSERT, so ``self.pk``
        is never a reliable "is this a new row" signal for these models.
        Use ``self._state.adding`` instead.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True


class OptimisticLockMixin(models.Model):
    """
    Version counter for optimistic concurrency control.

    ``save()`` on an existing row increments ``version`` in SQL, so two
    writers that both loaded version N cannot both believe they wrote N+1.
    Conditional writers use ``compare_and_set`` instead of ``save`` to
    make the check and the write a single UPDATE statement.

    Fields:
        version: Incremented on every write
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each write",
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        """Save with version auto-increment on update."""
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
            if kwargs.get("update_fields") is not None:
                kwargs["update_fields"] = {*kwargs["update_fields"], "version"}
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    def compare_and_set(self, expected: dict[str, Any], **changes: Any) -> bool:
        """
        Write ``changes`` only if the row still matches ``expected``.

        The current ``version`` is always part of the guard. On success the
        instance is updated in memory (including the new version) and True
        is returned; on a miss nothing is written and False is returned.

        Args:
            expected: Field values the row must still hold (e.g. payment_status)
            **changes: Field values to write
        """
        manager = type(self)._default_manager
        rows = manager.filter(pk=self.pk, version=self.version, **expected).update(
            version=F("version") + 1,
            **changes,
        )
        if rows != 1:
            return False

        for name, value in changes.items():
            setattr(self, name, value)
        self.version += 1
        return True
