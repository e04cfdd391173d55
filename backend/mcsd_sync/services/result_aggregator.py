"""Classification of transaction outcomes into a directory update report."""

import logging
from collections.abc import Iterable

from mcsd_sync.schemas import DirectoryUpdateReport, TransactionOutcome

logger = logging.getLogger(__name__)


def aggregate(
    outcomes: Iterable[TransactionOutcome],
    warnings: Iterable[str] = (),
) -> DirectoryUpdateReport:
    """Count created/updated/deleted resources from transaction outcomes.

    Statuses are matched on their code prefix ("201 Created" counts as 201).
    Unknown or missing statuses become warnings; they never raise, so a
    partially applied transaction still yields a report.

    Args:
        outcomes: Per-entry outcomes of the submitted transaction.
        warnings: Warnings collected earlier in the pipeline, kept first.

    Returns:
        The report for the directory.
    """
    created = updated = deleted = 0
    report_warnings = list(warnings)

    for outcome in outcomes:
        status = (outcome.status or "").strip()
        if status.startswith("201"):
            created += 1
        elif status.startswith("200"):
            updated += 1
        elif status.startswith("204"):
            deleted += 1
        else:
            msg = f"Unknown HTTP response status {status or '<none>'} (url={outcome.full_url})"
            logger.warning(msg)
            report_warnings.append(msg)

    return DirectoryUpdateReport(
        created=created,
        updated=updated,
        deleted=deleted,
        warnings=report_warnings,
    )
