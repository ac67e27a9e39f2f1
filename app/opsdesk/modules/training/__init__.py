"""
Training / exam module.

- Exam categories and question sets (CRUD)
- Exam start/submit flow with scoring against the configured pass score
- Training records with filters, statistics and xlsx/csv export
- HTML question-bank ingestion (parsers/html.py)
"""
