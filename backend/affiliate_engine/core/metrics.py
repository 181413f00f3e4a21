# Prometheus counters for the attribution pipeline. Labels are kept to
# low-cardinality values (outcomes, topics, flag types) so series stay bounded.

from prometheus_client import Counter

# Every /track call, labelled by what happened to it.
clicks_tracked_total = Counter(
    "clicks_tracked_total",
    "Click beacons grouped by outcome",
    ["outcome"],  # recorded|deduplicated|rejected
)

# Order webhooks by normalized topic and ingest outcome.
order_webhooks_total = Counter(
    "order_webhooks_total",
    "Shopify order webhooks grouped by topic and outcome",
    ["topic", "outcome"],
)

commissions_created_total = Counter(
    "commissions_created_total",
    "Commissions created",
    ["kind"],  # one_time|initial|renewal
)

commissions_reversed_total = Counter(
    "commissions_reversed_total",
    "Commissions reversed",
    ["reason"],
)

fraud_flags_total = Counter(
    "fraud_flags_total",
    "Fraud flags raised",
    ["flag_type"],
)

# Email matches are audit-only. This counter shows how often they would have
# changed the attribution.
attribution_email_audit_total = Counter(
    "attribution_email_audit_total",
    "Orders whose email matched an affiliate account",
)

affiliate_notifications_total = Counter(
    "affiliate_notifications_total",
    "Outbound affiliate webhooks and postbacks",
    ["kind", "success"],
)

job_runs_total = Counter(
    "job_runs_total",
    "Background job runs",
    ["job_name", "success"],
)


def record_job_run(job_name: str, success: bool) -> None:
    job_runs_total.labels(job_name=job_name, success=str(bool(success)).lower()).inc()


def record_notification(kind: str, success: bool) -> None:
    affiliate_notifications_total.labels(kind=kind, success=str(bool(success)).lower()).inc()
