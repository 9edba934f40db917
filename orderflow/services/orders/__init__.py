"""
Order lifecycle package.

Status enums and transition table, the state machine, repositories and the
lifecycle manager that ties payment and fulfillment together.
"""
