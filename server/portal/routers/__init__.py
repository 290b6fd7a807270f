"""API routers for the cadet portal."""

from portal.routers import email_rules, email_templates, emails, permissions, roles, tasks  # noqa: F401
