"""Test-run domain: models, persistence, cancellation and orchestration."""
