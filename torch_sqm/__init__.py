"""
torch_sqm: PyTorch Sound Quality Metrics
========================================

A PyTorch implementation of the ECMA-418-2 (2nd ed., 2024) roughness model
based on the Sottek hearing model. Every processing stage is a standalone
``nn.Module`` that can be reused on its own or chained into the end-to-end
model.

**Key Features:**
    - Mono, stereo and binaural roughness in asper
    - Time-dependent specific roughness on 53 half-Bark bands at 50 Hz
    - Percentile statistics with transient skipping
    - Intermediate stages available for inspection
    - Extensively documented with examples and references

**Quick Start:**

    >>> import torch
    >>> import torch_sqm
    >>>
    >>> # Complete roughness model
    >>> model = torch_sqm.ECMA418Roughness(fs=48000)
    >>> audio = 0.02 * torch.randn(48000, dtype=torch.float64)  # 1 s in Pa
    >>> result = model(audio)
    >>> result.roughness_tdep.shape
    torch.Size([50])
    >>>
    >>> # Or use individual components
    >>> fb = torch_sqm.HalfBarkFilterbank()
    >>> bands = fb(audio, bands=[10, 20])

**Package Structure:**

    torch_sqm/
    ├── models/             # End-to-end sound quality models
    │   └── ECMA418Roughness        - ECMA-418-2 roughness
    │
    └── common/             # Reusable building blocks
        ├── preprocessing.py        - Resampling, fade-in, padding, blocks
        ├── ears.py                 - Outer/middle ear filtering
        ├── filterbanks.py          - Half-Bark auditory filterbank
        ├── loudness.py             - Basis loudness
        ├── envelope.py             - Hilbert envelopes
        ├── modulation.py           - Modulation spectra and peaks
        ├── roughness.py            - Roughness weighting and transforms
        ├── stats.py                - Time-series statistics
        └── filters.py              - Generic signal processing utilities

**Author:**
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

**License:**
    GNU General Public License v3.0 or later (GPLv3+)

**Citations:**
    If you use this package in your research, please cite:

    - ECMA International (2024). "ECMA-418-2: Psychoacoustic metrics for ITT
      equipment - Part 2 (models based on human perception)," 2nd ed.

**References:**
    - SQAT sound quality analysis toolbox: https://github.com/ggrecow/SQAT

**Version History:**
    - 0.1.0 (2026-10): Initial release
"""

# ============================================================================
# Package Metadata
# ============================================================================

__version__ = "0.1.0"
__author__ = "Stefano Giacomelli"
__email__ = "stefano.giacomelli@graduate.univaq.it"
__license__ = "GPL-3.0-or-later"
__description__ = "PyTorch Sound Quality Metrics - ECMA-418-2 roughness"

# ============================================================================
# Public API - End-to-End Models
# ============================================================================

from torch_sqm.models.ecma418_2 import (
    ECMA418Roughness,                   # ECMA-418-2 roughness model
    roughness_ecma418_2,                # One-call functional wrapper
    RoughnessResult,                    # Shared result fields
    MonoRoughness,                      # Single-channel result
    StereoRoughness,                    # Two-channel result
    StereoWithBinauralRoughness,        # Two-channel + binaural result
)

# ============================================================================
# Public API - Common Building Blocks
# ============================================================================

# --- Pre-processing ---
from torch_sqm.common.preprocessing import (
    Resampler,                          # Sinc resampling to 48 kHz
    FadeInPadding,                      # Raised-cosine fade-in + zero padding
    num_blocks,                         # Block count for a signal length
    segment_signal,                     # Overlapping block segmentation
)

# --- Outer & Middle Ear Filtering ---
from torch_sqm.common.ears import (
    OuterMiddleEarFilter,               # Free-frontal / diffuse field filter
)

# --- Filterbanks & Frequency Processing ---
from torch_sqm.common.filterbanks import (
    halfbark_scale,                     # Half-Bark critical band rates
    halfbark2fc,                        # Critical band rate to centre frequency
    fc2halfbark,                        # Centre frequency to critical band rate
    critical_bandwidth,                 # Critical bandwidth at a frequency
    HalfBarkFilterbank,                 # 53-band auditory filterbank
)

# --- Loudness & Envelopes ---
from torch_sqm.common.loudness import (
    BasisLoudness,                      # Specific and basis loudness per block
)
from torch_sqm.common.envelope import (
    HilbertEnvelope,                    # Downsampled Hilbert envelope
)

# --- Modulation Analysis ---
from torch_sqm.common.modulation import (
    ModulationSpectrum,                 # Loudness-scaled modulation spectra
    ModulationNoiseReduction,           # Band averaging + clipping weight
    ModulationPeakPicker,               # Peak search and rate refinement
)

# --- Roughness ---
from torch_sqm.common.roughness import (
    HighRateWeighting,                  # High modulation rate weighting
    HarmonicGrouping,                   # Harmonic complex selection
    LowRateWeighting,                   # Low modulation rate weighting
    SpecificRoughnessTransform,         # Interpolation + nonlinear transform
    RoughnessLowPass,                   # Asymmetric rise/fall smoothing
    binaural_roughness,                 # Left/right combination
)

# --- Statistics ---
from torch_sqm.common.stats import (
    RoughnessStatistics,                # Max/min/mean/std/percentiles
    exceeded_percentile,                # Value exceeded during x % of time
)

# --- Generic Filters & Signal Processing ---
from torch_sqm.common.filters import (
    torch_hilbert,                      # Analytic signal via Hilbert transform
    torch_pchip_interp,                 # PCHIP interpolation
    SOSFilter,                          # Second-order sections filter
    IIRFilter,                          # Generic (complex) IIR filter
    apply_sos,                          # Apply SOS filter
    apply_iir,                          # Apply IIR filter
)

# ============================================================================
# Package-Level Exports
# ============================================================================

__all__ = [
    # ========================================================================
    # Complete Models
    # ========================================================================
    "ECMA418Roughness",
    "roughness_ecma418_2",
    "RoughnessResult",
    "MonoRoughness",
    "StereoRoughness",
    "StereoWithBinauralRoughness",

    # ========================================================================
    # Pre-processing
    # ========================================================================
    "Resampler",
    "FadeInPadding",
    "num_blocks",
    "segment_signal",

    # ========================================================================
    # Outer & Middle Ear Models
    # ========================================================================
    "OuterMiddleEarFilter",

    # ========================================================================
    # Filterbanks
    # ========================================================================
    "halfbark_scale",
    "halfbark2fc",
    "fc2halfbark",
    "critical_bandwidth",
    "HalfBarkFilterbank",

    # ========================================================================
    # Loudness & Envelopes
    # ========================================================================
    "BasisLoudness",
    "HilbertEnvelope",

    # ========================================================================
    # Modulation Analysis
    # ========================================================================
    "ModulationSpectrum",
    "ModulationNoiseReduction",
    "ModulationPeakPicker",

    # ========================================================================
    # Roughness
    # ========================================================================
    "HighRateWeighting",
    "HarmonicGrouping",
    "LowRateWeighting",
    "SpecificRoughnessTransform",
    "RoughnessLowPass",
    "binaural_roughness",

    # ========================================================================
    # Statistics
    # ========================================================================
    "RoughnessStatistics",
    "exceeded_percentile",

    # ========================================================================
    # Signal Processing Utilities
    # ========================================================================
    "torch_hilbert",
    "torch_pchip_interp",
    "SOSFilter",
    "IIRFilter",
    "apply_sos",
    "apply_iir",
]

# ============================================================================
# Convenience: Group components by category for easier discovery
# ============================================================================

models = {
    'ECMA418Roughness': ECMA418Roughness,
}

filterbanks = {
    'HalfBarkFilterbank': HalfBarkFilterbank,
}

ears = {
    'OuterMiddleEarFilter': OuterMiddleEarFilter,
}

modulation = {
    'ModulationSpectrum': ModulationSpectrum,
    'ModulationNoiseReduction': ModulationNoiseReduction,
    'ModulationPeakPicker': ModulationPeakPicker,
}

roughness = {
    'HighRateWeighting': HighRateWeighting,
    'HarmonicGrouping': HarmonicGrouping,
    'LowRateWeighting': LowRateWeighting,
    'SpecificRoughnessTransform': SpecificRoughnessTransform,
    'RoughnessLowPass': RoughnessLowPass,
}
