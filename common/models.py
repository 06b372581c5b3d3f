from django.db import models

from common import errors


class AppendOnlyQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise errors.InvariantError(f"{self.model.__name__} entries are append-only.")

    def delete(self):
        raise errors.InvariantError(f"{self.model.__name__} entries are append-only.")


class AppendOnlyModel(models.Model):
    """Ledger rows that may be inserted once and never changed or removed."""

    objects = AppendOnlyQuerySet.as_manager()

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise errors.InvariantError(f"{type(self).__name__} entries are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise errors.InvariantError(f"{type(self).__name__} entries are append-only.")
