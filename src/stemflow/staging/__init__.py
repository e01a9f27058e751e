from stemflow.staging.machine import GhostStagingMachine

__all__ = ["GhostStagingMachine"]
