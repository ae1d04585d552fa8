"""shelter_epi: SEIQHRF epidemic simulation on a dynamic contact network.

An individual-based, discrete-time model of an outbreak in a crowded
shelter, coupling:
  - SEIQHRF disease dynamics with quarantine and hospitalization
  - A dynamic contact network with housing-aware tie formation/dissolution
  - Age-stratified hospitalization and fatality propensities
  - A hospital capacity limit that raises fatality when exceeded
  - Optional background arrivals and departures
"""

__version__ = "0.1.0"
