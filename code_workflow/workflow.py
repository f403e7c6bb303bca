REQUEST_TYPES = {"plant", "company"}

ROLES = {"requestor", "it", "secretary", "finance", "raghu", "siva", "manoj", "admin"}
APPROVER_ROLES = {"secretary", "finance", "raghu", "siva", "manoj"}

STATUS_DRAFT = "draft"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_SAP_UPDATED = "sap-updated"
STATUS_COMPLETED = "completed"

APPROVAL_CHAINS: dict[str, tuple[str, ...]] = {
    "standard": ("secretary", "finance", "raghu", "siva"),
    "revised": ("secretary", "siva", "raghu", "manoj"),
}
DEFAULT_CHAIN = "standard"

# role -> status it acts on, and back
PENDING_STATUS_BY_ROLE = {role: f"pending-{role}" for role in sorted(APPROVER_ROLES)}
ROLE_BY_PENDING_STATUS = {status: role for role, status in PENDING_STATUS_BY_ROLE.items()}

PENDING_STATUSES = set(ROLE_BY_PENDING_STATUS)
FINAL_STATUSES = {STATUS_APPROVED, STATUS_REJECTED, STATUS_SAP_UPDATED, STATUS_COMPLETED}
EDITABLE_STATUSES = PENDING_STATUSES | {STATUS_DRAFT}
CHANGE_SOURCE_STATUSES = {STATUS_APPROVED, STATUS_SAP_UPDATED, STATUS_COMPLETED}

DECISIONS = {"approve", "reject"}

_LABEL_OVERRIDES = {STATUS_SAP_UPDATED: "SAP Updated"}


def pending_status(role: str) -> str | None:
    return PENDING_STATUS_BY_ROLE.get(role)


def approver_role(status: str) -> str | None:
    return ROLE_BY_PENDING_STATUS.get(status)


def _chain(chain: str) -> tuple[str, ...]:
    try:
        return APPROVAL_CHAINS[chain]
    except KeyError:
        raise ValueError(f"Unknown approval chain: {chain}") from None


def first_status(chain: str) -> str:
    return PENDING_STATUS_BY_ROLE[_chain(chain)[0]]


def next_status(chain: str, current: str, decision: str) -> str:
    """Return the status a request moves to when its current approver decides.

    A rejection is terminal at any step. An approval hands the request to the
    next role in the chain, or marks it approved after the last one.
    """
    roles = _chain(chain)
    if decision not in DECISIONS:
        raise ValueError("Decision must be approve or reject")
    role = approver_role(current)
    if role not in roles:
        raise ValueError(f"Status '{current}' is not an approval step of the '{chain}' chain")
    if decision == "reject":
        return STATUS_REJECTED
    position = roles.index(role)
    if position + 1 == len(roles):
        return STATUS_APPROVED
    return PENDING_STATUS_BY_ROLE[roles[position + 1]]


def can_approve(status: str, role: str) -> bool:
    return approver_role(status) == role


def is_pending(status: str) -> bool:
    return status in PENDING_STATUSES


def is_final(status: str) -> bool:
    return status in FINAL_STATUSES


def status_label(status: str) -> str:
    if status in _LABEL_OVERRIDES:
        return _LABEL_OVERRIDES[status]
    return " ".join(part.capitalize() for part in status.split("-"))
