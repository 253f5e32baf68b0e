from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from context import RequestContext, get_api_key, get_request_context
from db import get_db
from models import Customer, Transaction
from schemas import ApiKeyPurpose, ApiKeyRecord
from security import require_purpose
from timing import Stopwatch

RESULT_LIMIT = 100

router = APIRouter()

# One database user per purpose
marketing_db = get_db(ApiKeyPurpose.MARKETING)
auditor_db = get_db(ApiKeyPurpose.AUDIT)
data_steward_db = get_db(ApiKeyPurpose.SYSTEM)


# ======================================================
# Helpers
# ======================================================

def _classifications(api_key: ApiKeyRecord) -> List[str]:
    return [c.value for c in api_key.data_classification]


def _run(db: Session, stmt, ctx: RequestContext, resource_keys=()) -> List[Dict[str, Any]]:
    """
    Execute stmt, record its duration and the rows it touched on ctx.
    resource_keys: (kind, column) pairs turned into "<kind>:<id>" identifiers.
    """
    stopwatch = Stopwatch()
    rows = [dict(row._mapping) for row in db.execute(stmt)]

    resources = []
    for row in rows:
        for kind, column in resource_keys:
            resources.append(f"{kind}:{row[column]}")

    ctx.record_query(stopwatch.elapsed_ms, resources)
    return rows


# ======================================================
# Marketing
# ======================================================

@router.get(
    "/customers/top-spending",
    dependencies=[Depends(require_purpose(ApiKeyPurpose.MARKETING))],
)
def top_spending_customers(
    db: Session = Depends(marketing_db),
    ctx: RequestContext = Depends(get_request_context),
    api_key: ApiKeyRecord = Depends(get_api_key),
):
    allowed = _classifications(api_key)
    total_spent = func.sum(Transaction.amount).label("total_spent")

    stmt = (
        select(
            Transaction.customer_id,
            Customer.first_name,
            Customer.last_name,
            total_spent,
        )
        .join(Customer, Customer.customer_id == Transaction.customer_id)
        .where(
            Customer.consent_marketing.is_(True),
            Transaction.data_classification.in_(allowed),
            Customer.data_classification.in_(allowed),
        )
        .group_by(Transaction.customer_id, Customer.first_name, Customer.last_name)
        .order_by(total_spent.desc())
        .limit(RESULT_LIMIT)
    )

    return _run(db, stmt, ctx, [("customer", "customer_id")])


@router.get(
    "/transactions/most-expensive",
    dependencies=[Depends(require_purpose(ApiKeyPurpose.MARKETING))],
)
def most_expensive_transactions(
    db: Session = Depends(marketing_db),
    ctx: RequestContext = Depends(get_request_context),
    api_key: ApiKeyRecord = Depends(get_api_key),
):
    allowed = _classifications(api_key)

    stmt = (
        select(
            Transaction.transaction_id,
            Transaction.customer_id,
            Customer.first_name,
            Customer.last_name,
            Transaction.amount,
            Transaction.currency,
            Transaction.transaction_date,
        )
        .join(Customer, Customer.customer_id == Transaction.customer_id)
        .where(
            Customer.consent_marketing.is_(True),
            Transaction.data_classification.in_(allowed),
            Customer.data_classification.in_(allowed),
        )
        .order_by(Transaction.amount.desc())
        .limit(RESULT_LIMIT)
    )

    return _run(db, stmt, ctx, [("transaction", "transaction_id")])


@router.get(
    "/customers/{customer_id}/segments",
    dependencies=[Depends(require_purpose(ApiKeyPurpose.MARKETING))],
)
def customer_segments(
    customer_id: int,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Marketing segments live in redis as a set per customer.
    """
    redis = request.app.state.redis

    stopwatch = Stopwatch()
    segments = sorted(redis.smembers(f"customer:{customer_id}:segments"))
    ctx.record_query(stopwatch.elapsed_ms, [f"customer:{customer_id}"])

    return {"customer_id": customer_id, "segments": segments}


# ======================================================
# Audit
# ======================================================

@router.get(
    "/transactions/timeline",
    dependencies=[Depends(require_purpose(ApiKeyPurpose.AUDIT))],
)
def transaction_timeline(
    db: Session = Depends(auditor_db),
    ctx: RequestContext = Depends(get_request_context),
    api_key: ApiKeyRecord = Depends(get_api_key),
):
    day = func.date(Transaction.transaction_date).label("date")

    stmt = (
        select(day, func.count().label("transaction_count"))
        .where(Transaction.data_classification.in_(_classifications(api_key)))
        .group_by(day)
        .order_by(day.desc())
        .limit(RESULT_LIMIT)
    )

    return _run(db, stmt, ctx)


@router.get(
    "/transactions/status-distribution",
    dependencies=[Depends(require_purpose(ApiKeyPurpose.AUDIT))],
)
def status_distribution(
    db: Session = Depends(auditor_db),
    ctx: RequestContext = Depends(get_request_context),
    api_key: ApiKeyRecord = Depends(get_api_key),
):
    stmt = (
        select(Transaction.status, func.count().label("count"))
        .where(Transaction.data_classification.in_(_classifications(api_key)))
        .group_by(Transaction.status)
    )

    return _run(db, stmt, ctx)


# ======================================================
# System (data stewards)
# ======================================================

@router.get(
    "/transactions/classification-counts",
    dependencies=[Depends(require_purpose(ApiKeyPurpose.SYSTEM))],
)
def classification_counts(
    db: Session = Depends(data_steward_db),
    ctx: RequestContext = Depends(get_request_context),
):
    count = func.count().label("count")

    stmt = (
        select(Transaction.data_classification, count)
        .group_by(Transaction.data_classification)
        .order_by(count.desc())
    )

    return _run(db, stmt, ctx)


@router.get(
    "/transactions/recent",
    dependencies=[Depends(require_purpose(ApiKeyPurpose.SYSTEM))],
)
def recent_transactions(
    db: Session = Depends(data_steward_db),
    ctx: RequestContext = Depends(get_request_context),
    api_key: ApiKeyRecord = Depends(get_api_key),
):
    stmt = (
        select(
            Transaction.transaction_id,
            Transaction.customer_id,
            Transaction.transaction_date,
            Transaction.amount,
            Transaction.currency,
            Transaction.status,
            Transaction.data_classification,
        )
        .where(Transaction.data_classification.in_(_classifications(api_key)))
        .order_by(Transaction.transaction_date.desc())
        .limit(RESULT_LIMIT)
    )

    return _run(db, stmt, ctx, [("transaction", "transaction_id")])
