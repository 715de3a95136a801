"""Notification package.

Renders invitation messages and hands them to channel providers.  The
SMS channel is mandatory for every account; email is attempted only when
the member has an address.
"""
