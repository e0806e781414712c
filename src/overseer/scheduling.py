from __future__ import annotations

from overseer.models import Plan, Task


def unmet_dependencies(plan: Plan, task: Task) -> list[str]:
    """Ids in ``task.depends_on`` that point at a task not yet completed.

    Unknown ids are ignored: a dependency on a task that is not in the plan
    never blocks.
    """
    by_id = {candidate.id: candidate for candidate in plan.tasks}
    return [
        dep_id
        for dep_id in task.depends_on
        if dep_id in by_id and by_id[dep_id].status != "completed"
    ]


def refresh_blocked_by(plan: Plan, task: Task) -> bool:
    task.blocked_by = unmet_dependencies(plan, task)
    return not task.blocked_by


def select_next_task(plan: Plan, *, allow_retry: bool = True) -> Task | None:
    """Pick the next task to run, in declaration order.

    First pending task whose dependencies are all completed. Failing that, and
    when ``allow_retry`` is set, the first failed task with attempts left is
    demoted back to pending and returned. ``blocked_by`` is refreshed only on
    the tasks looked at here.
    """
    for task in plan.tasks:
        if task.status != "pending":
            continue
        if refresh_blocked_by(plan, task):
            return task

    if not allow_retry:
        return None

    for task in plan.tasks:
        if task.status == "failed" and task.retries_left:
            task.status = "pending"
            task.blocked_by = []
            return task
    return None
