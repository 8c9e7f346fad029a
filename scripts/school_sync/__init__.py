"""School data sync system.

Pulls rosters, attendance, allocations and assessments from the Nexquare
and ManageBac school-information APIs for many tenant schools in parallel,
with token caching, retry/backoff and pagination, and bulk-upserts the
results into the PostgreSQL reporting store.
"""
