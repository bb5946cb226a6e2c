"""
M365 Admin Toolkit
==================
Microsoft 365 administration through Microsoft Graph: users, groups, reports,
Teams, SharePoint, OneDrive and compliance, plus bulk and lifecycle automation.

Run with --dry-run to record write requests as planned changes without
sending them to the tenant.
"""

__version__ = "1.0.0"
__author__ = "M365 Admin Toolkit"
