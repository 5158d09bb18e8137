from vmfleet.lifecycle.boot import BootSequencer
from vmfleet.lifecycle.controller import Decision, LifecycleController
from vmfleet.lifecycle.shutdown import ShutdownSequencer

__all__ = ["BootSequencer", "Decision", "LifecycleController", "ShutdownSequencer"]
