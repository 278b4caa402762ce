from prometheus_client import Counter


reminders_created_total = Counter(
    "followup_reminders_created_total",
    "Total reminders created (including recurrence successors)",
)

reminders_completed_total = Counter(
    "followup_reminders_completed_total",
    "Total reminders marked completed",
)

reminders_cancelled_total = Counter(
    "followup_reminders_cancelled_total",
    "Total reminders cancelled",
)

reminders_missed_total = Counter(
    "followup_reminders_missed_total",
    "Total sent reminders flipped to missed after the grace window",
)

reminders_conflicts_total = Counter(
    "followup_reminders_conflicts_total",
    "Total compare-and-swap status updates lost to a concurrent writer",
)

scheduler_cycles_total = Counter(
    "followup_reminder_scheduler_cycles_total",
    "Total dispatcher cycles",
)

scheduler_cycle_errors_total = Counter(
    "followup_reminder_scheduler_cycle_errors_total",
    "Total dispatcher cycle or per-item store failures",
)

reminders_dispatched_total = Counter(
    "followup_reminders_dispatched_total",
    "Total reminders moved to sent (scheduled or send-now)",
    ["trigger"],
)

reminders_delivery_failed_total = Counter(
    "followup_reminders_delivery_failed_total",
    "Total failed deliveries through the transport",
)
