"""Action pipeline core: domain types, persistence, handlers and services."""
