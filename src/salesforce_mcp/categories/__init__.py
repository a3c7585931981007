"""
Salesforce MCP Tools - Category Modules

- metadata: Metadata tools (type catalog, retrieve, deploy, bundle deploy)
- records: Record query and DML (REST / sObject Collections / Bulk API 2.0)
"""
