"""
crm_dedupe - Duplicate contact resolution for HubSpot CRM.

Connects a HubSpot account, loads duplicate contact groups detected upstream,
and reduces each group to one canonical record with a local merge ledger.
"""

__version__ = "0.1.0"
