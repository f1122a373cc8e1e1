from .selector import preview_next, resolve_specific_assignee, select_for_policy, select_next

__all__ = ["preview_next", "resolve_specific_assignee", "select_for_policy", "select_next"]
