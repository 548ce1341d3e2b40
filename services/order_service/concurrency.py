from .errors import VersionConflict
from .models import Order


class ConcurrencyGuard:
    """Optimistic version check run on the locked row, before any transition.

    The check is only half of the story: ``Order`` is mapped with
    ``version_id_col`` so the UPDATE itself is conditional on the version that
    was read, and a lost race surfaces as ``StaleDataError`` at flush time.
    Conflicts are reported, never retried here.
    """

    @staticmethod
    def check(order: Order, expected_version: int) -> None:
        if order.version != expected_version:
            raise VersionConflict(expected_version, order.version, order.snapshot())
