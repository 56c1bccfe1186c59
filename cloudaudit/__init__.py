"""
Cloud Audit Engine - scheduled security audits of AWS accounts, GCP projects
and Azure subscriptions.

Entry points live in submodules so importing the package stays cheap:
    cloudaudit.orchestrator.get_orchestrator().trigger_scan(provider, account_id)
    cloudaudit.scheduler.get_scheduler().start()
"""

__version__ = '1.0.0'
