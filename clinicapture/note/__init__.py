"""
Clinical document generation boundary for clinicapture.

Design intent:
- Run focused extraction agents concurrently, then compose one document per type.
- Condition documents on prior encounters when patient history is available.
- Report every requested document type, success or failure.
"""
