"""
API orchestration boundary for clinicapture.

Design intent:
- Expose thin, typed endpoints for transcription, token and document flows.
- Keep request validation explicit and failure modes predictable.
- Orchestrate modules without embedding domain logic in routers.
"""
