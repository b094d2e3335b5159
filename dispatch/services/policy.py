"""
Dispatch Policy Resolver

Returns a branch's dispatch policy, creating it with the configured defaults
on first access.

Concurrent first calls are serialized per branch inside the process; across
processes the unique branch_id constraint decides and the loser re-reads.
"""

import logging

from dispatch.core.config import Settings
from dispatch.core.errors import NotFoundError
from dispatch.repositories.base import DispatchStore, PolicyRecord
from dispatch.services.locks import branch_lock

logger = logging.getLogger(__name__)


def default_policy(branch_id: int, settings: Settings) -> PolicyRecord:
    return PolicyRecord(
        branch_id=branch_id,
        auto_dispatch=settings.default_auto_dispatch,
        max_per_trip=settings.default_max_per_trip,
        max_cluster_distance_meters=settings.default_max_cluster_distance_meters,
        max_cluster_time_minutes=settings.default_max_cluster_time_minutes,
        availability_rule=settings.default_availability_rule,
    )


async def resolve_policy(store: DispatchStore, branch_id: int, settings: Settings) -> PolicyRecord:
    """
    Get or create the dispatch policy of a branch.

    Raises:
        NotFoundError: If the branch does not exist
    """
    policy = await store.policies.get(branch_id)
    if policy is not None:
        return policy

    if await store.branches.get(branch_id) is None:
        raise NotFoundError(f"Branch #{branch_id} not found")

    async with branch_lock("policy", branch_id):
        async with store.transaction():
            policy = await store.policies.upsert(default_policy(branch_id, settings))

    logger.info(
        f"Dispatch policy ready for branch #{branch_id} "
        f"(max_per_trip={policy.max_per_trip}, rule={policy.availability_rule.value})"
    )
    return policy
