"""Pipeline services: upstream clients, printer dispatch, storage and orchestration."""
