"""
Subscription Workflow.

Status only moves forward:

    DRAFT ----\\
               +--> CONFIRMED --> ACTIVE --> CLOSED
    QUOTATION -/

Every status-changing transition appends exactly one history entry.  The
self-transitions gate operations that edit a subscription without moving
its status.
"""

from billing_kernel.domain.workflow import Guard, Transition, Workflow
from billing_modules.subscriptions.models import SubscriptionStatus

DRAFT = SubscriptionStatus.DRAFT.value
QUOTATION = SubscriptionStatus.QUOTATION.value
CONFIRMED = SubscriptionStatus.CONFIRMED.value
ACTIVE = SubscriptionStatus.ACTIVE.value
CLOSED = SubscriptionStatus.CLOSED.value

GATEWAY_ORDER_CREATED = Guard(
    name="gateway_order_created",
    description="A gateway order for a positive amount exists",
)

PAYMENT_SIGNATURE_VERIFIED = Guard(
    name="payment_signature_verified",
    description="Gateway callback signature matched",
)

PLAN_CLOSABLE = Guard(
    name="plan_closable",
    description="Plan allows closing subscriptions",
)

PLAN_RENEWABLE = Guard(
    name="plan_renewable",
    description="Plan allows renewal",
)

SUBSCRIPTION_WORKFLOW = Workflow(
    name="Subscription",
    description="Subscription lifecycle",
    initial_states=(DRAFT, QUOTATION),
    states=(DRAFT, QUOTATION, CONFIRMED, ACTIVE, CLOSED),
    transitions=(
        Transition(DRAFT, CONFIRMED, action="initiate_payment",
                   guard=GATEWAY_ORDER_CREATED, writes_history=True),
        Transition(QUOTATION, CONFIRMED, action="initiate_payment",
                   guard=GATEWAY_ORDER_CREATED, writes_history=True),
        Transition(CONFIRMED, ACTIVE, action="payment_verified",
                   guard=PAYMENT_SIGNATURE_VERIFIED, writes_history=True),
        Transition(ACTIVE, CLOSED, action="close",
                   guard=PLAN_CLOSABLE, writes_history=True),
        # Edits that keep the status
        Transition(DRAFT, DRAFT, action="edit"),
        Transition(QUOTATION, QUOTATION, action="edit"),
        Transition(DRAFT, DRAFT, action="delete"),
        Transition(ACTIVE, ACTIVE, action="renew", guard=PLAN_RENEWABLE),
        Transition(CLOSED, CLOSED, action="renew", guard=PLAN_RENEWABLE),
        Transition(ACTIVE, ACTIVE, action="upsell"),
    ),
    terminal_states=(CLOSED,),
)
