"""Pipeline stages: diff, overrides, archive, deploy and the orchestrator."""
