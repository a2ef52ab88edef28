"""crm-audit — Execution core for approved CRM data-quality action plans.

An audit proposes corrective mutations as an action plan; once the plan is
approved, this package applies it to the remote CRM with dependency
ordering, rate limiting, a per-account execution lock, and best-effort
rollback.

Architecture layers (bottom to top):
    1. Plan          — Action plan models, JSON loading/saving
    2. Remote        — RemotePlatform capability, HubSpot client on httpx
    3. Orchestration — Rate limiter, lock, dependency resolver, executor, rollback
    4. Service       — ExecutionService facade wired from Settings
"""

__version__ = "0.1.0"

from crm_audit.plan.models import ActionPlan, BaseAction

__all__ = [
    "__version__",
    "ActionPlan",
    "BaseAction",
]
