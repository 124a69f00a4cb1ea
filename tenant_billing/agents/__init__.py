from tenant_billing.agents.expiry_sweeper import app as expiry_sweeper_app

__all__ = ["expiry_sweeper_app"]
