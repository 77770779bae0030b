"""HTTP routers for the job queue and notification dashboards."""
