"""ESGFlow: ESG initiative lifecycle and stakeholder-contribution workflow."""

__version__ = "0.1.0"
