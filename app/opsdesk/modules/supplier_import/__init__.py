"""
Supplier/company import pipeline.

Companies are upserted one SAVEPOINT at a time; rows that fail are kept as
FailedCompany records under their ImportRecord so they can be retried.
"""
