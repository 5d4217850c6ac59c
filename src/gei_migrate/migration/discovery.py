"""Discovery of the source organization's repositories."""

from typing import Optional

from loguru import logger

from ..api.inspection import InspectionClient
from ..models.repository import RepoStatus
from ..state.store import StateStore
from .events import Notifier


async def discover_repositories(
    store: StateStore,
    client: InspectionClient,
    notifier: Optional[Notifier] = None,
) -> int:
    """Seed the store with source repositories it does not know yet.

    New repositories start out unclassified; existing records are left
    alone.

    Returns:
        Number of repositories added
    """
    log = logger.bind(component='Discovery')
    log.info('Discovering repositories in source organization...')

    repos = await client.list_repositories()
    added = 0
    for repo in repos:
        if repo.name in store:
            continue
        store.upsert(
            repo.name,
            visibility=repo.visibility,
            status=RepoStatus.UNCLASSIFIED,
        )
        added += 1

    if added:
        store.request_save()
        if notifier is not None:
            notifier.notify()

    log.info(f'Found {len(repos)} repositories, {added} new')
    return added
