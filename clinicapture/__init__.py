"""
clinicapture package.

Design intent:
- Record a consultation, transcribe it live or in batches, and draft clinical documents.
- Keep each stage independent behind typed records.
"""
