"""Error taxonomy for shelter_epi.

  - ConfigurationError:         fatal, raised before any timestep runs
  - NetworkApproximationWarning: recovered locally, surfaced as a diagnostic
  - CapacityInvariantViolation: fatal within a replicate (bookkeeping bug)
  - ReplicateAborted:           a replicate was cancelled mid-horizon
"""


class ShelterEpiError(Exception):
    """Base class for all shelter_epi errors."""


class ConfigurationError(ShelterEpiError, ValueError):
    """Invalid or incomplete inputs. Aborts the replicate before t=1."""


class CapacityInvariantViolation(ShelterEpiError, RuntimeError):
    """H-occupancy counter disagrees with the individuals actually in H."""


class ReplicateAborted(ShelterEpiError):
    """A replicate was stopped before reaching its horizon.

    Partial results are never returned; the replicate is discarded whole.
    """

    def __init__(self, reason: str, timestep: int):
        super().__init__(f"replicate aborted at t={timestep}: {reason}")
        self.reason = reason
        self.timestep = timestep


class NetworkApproximationWarning(UserWarning):
    """Formation targets were not matched within tolerance this timestep."""
