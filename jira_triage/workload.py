"""
Workload-based assignee ranking.

Agents are ranked by their number of open tickets in the project. The
lookup is injected so the ranking itself stays pure and testable.

Lookup failures exclude the agent from the ranking; an unknown load is
never treated as zero.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

from .models import Agent, AssigneeRecommendation, WorkloadRanking


logger = logging.getLogger(__name__)


LoadLookup = Callable[[str], int]


def recommendation_reason(current_load: int) -> str:
    return f"Lowest workload ({current_load} open tickets)"


def _resolve_load(agent: Agent, load_lookup: LoadLookup) -> Optional[Agent]:
    """Return the agent with its load filled in, or None if the lookup failed."""
    try:
        load = int(load_lookup(agent.account_id))
    except Exception as e:
        logger.warning(
            f"Workload lookup failed for {agent.display_name or agent.account_id}, "
            f"excluding from ranking: {e}"
        )
        return None

    if load < 0:
        logger.warning(f"Negative workload {load} for {agent.account_id}, excluding from ranking")
        return None

    return agent.model_copy(update={"current_load": load})


def rank_agents(
    agents: Sequence[Agent],
    load_lookup: LoadLookup,
    max_workers: int = 1,
) -> WorkloadRanking:
    """
    Rank active agents by ascending open-ticket count.

    Args:
        agents: Candidate agents in the order Jira returned them.
        load_lookup: Returns the open-ticket count for an account id.
        max_workers: Lookups run in a thread pool when greater than 1.

    Returns:
        WorkloadRanking with agents sorted by load (ties keep input order)
        and the first agent as recommendation, or no recommendation when
        no agent could be ranked.
    """
    active = [agent for agent in agents if agent.active]
    skipped = len(agents) - len(active)
    if skipped:
        logger.debug(f"Skipping {skipped} inactive agent(s)")

    if not active:
        return WorkloadRanking()

    if max_workers > 1 and len(active) > 1:
        workers = min(max_workers, len(active))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            # map preserves input order regardless of completion order
            resolved = list(executor.map(lambda a: _resolve_load(a, load_lookup), active))
    else:
        resolved = [_resolve_load(agent, load_lookup) for agent in active]

    ranked = sorted(
        (agent for agent in resolved if agent is not None),
        key=lambda agent: agent.current_load,
    )

    recommendation = None
    if ranked:
        best = ranked[0]
        recommendation = AssigneeRecommendation(
            account_id=best.account_id,
            display_name=best.display_name,
            current_load=best.current_load,
            reasoning=recommendation_reason(best.current_load),
        )

    return WorkloadRanking(agents=tuple(ranked), recommendation=recommendation)


class JiraWorkloadLookup:
    """Counts open issues assigned to an account within one project."""

    def __init__(self, client, project_key: str, max_results: int = 100):
        self._client = client
        self._project_key = project_key
        self._max_results = max_results

    def build_jql(self, account_id: str) -> str:
        return (
            f'project = {self._project_key} AND assignee = "{account_id}" '
            f'AND statusCategory != Done'
        )

    def __call__(self, account_id: str) -> int:
        return self._client.count_issues(
            self.build_jql(account_id),
            max_results=self._max_results,
        )
