from .notifications import Notification
from .recorder import EncounterRecorder, build_encounter_recorder

__all__ = ["EncounterRecorder", "Notification", "build_encounter_recorder"]
