from grantflow.services.approvals.decisions import (
    cancel_approval_by_id,
    decide_approval,
    submit_approval,
)
from grantflow.services.approvals.policies import (
    PolicyCache,
    PolicySnapshot,
    get_policy_cache,
    publish_policy,
    resolve_policy,
)
from grantflow.services.approvals.providers import (
    ApprovalProvider,
    ExternalApprovalProvider,
    InternalApprovalProvider,
    SubmissionRequest,
)

__all__ = [
    "ApprovalProvider",
    "ExternalApprovalProvider",
    "InternalApprovalProvider",
    "PolicyCache",
    "PolicySnapshot",
    "SubmissionRequest",
    "cancel_approval_by_id",
    "decide_approval",
    "get_policy_cache",
    "publish_policy",
    "resolve_policy",
    "submit_approval",
]
