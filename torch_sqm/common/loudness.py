"""
Basis Loudness
==============

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

Block-wise specific loudness of a band signal and the derived "basis loudness"
used by the ECMA-418-2 roughness and tonality models to weight modulation
spectra. The transform maps the RMS pressure of a half-wave rectified block
through a piecewise power law with eight threshold regions, and subtracts the
band threshold in quiet.

References
----------
.. [1] ECMA International, "ECMA-418-2: Psychoacoustic metrics for ITT equipment -
       Part 2 (models based on human perception)," 2nd ed., Geneva, 2024.
"""

from typing import Optional, Tuple

import torch
import torch.nn as nn

from .filterbanks import N_BANDS

# -------------------------------------------------- Data ----------------------------------------------------

P_REF = 2e-5              # reference pressure (Pa)
CAL_N = 0.0211668         # loudness calibration factor
CAL_NX = 1.00132          # loudness calibration correction
ALPHA = 1.5               # threshold-region transition exponent

# Threshold levels (dB SPL) and compression exponents of the level regions
THRESHOLD_LEVELS = torch.arange(15.0, 86.0, 10.0, dtype=torch.float64)
COMPRESSION_EXPONENTS = torch.tensor([1.0, 0.6602, 0.0864, 0.6384, 0.0328,
                                      0.4068, 0.2082, 0.3994, 0.6434], dtype=torch.float64)

# Specific loudness threshold in quiet per half-Bark band (sone_HMS/Bark)
LTQ_SPECIFIC = torch.tensor([
    0.3310, 0.1625, 0.1051, 0.0757, 0.0576, 0.0453, 0.0365, 0.0298, 0.0247, 0.0207,
    0.0176, 0.0151, 0.0131, 0.0115, 0.0103, 0.0093, 0.0086, 0.0081, 0.0077, 0.0074,
    0.0073, 0.0072, 0.0071, 0.0072, 0.0073, 0.0074, 0.0076, 0.0079, 0.0082, 0.0086,
    0.0092, 0.0100, 0.0109, 0.0122, 0.0138, 0.0157, 0.0172, 0.0180, 0.0180, 0.0177,
    0.0176, 0.0177, 0.0182, 0.0190, 0.0202, 0.0217, 0.0237, 0.0263, 0.0296, 0.0339,
    0.0398, 0.0485, 0.0622,
], dtype=torch.float64)

# -------------------------------------------------- Loudness ------------------------------------------------

class BasisLoudness(nn.Module):
    r"""
    Block-wise specific and basis loudness of half-Bark band signals.

    Algorithm Overview
    ------------------
    1. **Half-wave rectification** of each block of the band signal.

    2. **RMS pressure** of the rectified block (scaled to the equivalent
       sinusoid amplitude):

       .. math::
           \tilde{p}(l, z) = \sqrt{\frac{2}{s_b} \sum_n p_{rect}^2(n, l, z)}

    3. **Specific loudness** through eight level regions:

       .. math::
           N'(l, z) = c_N \frac{\tilde{p}}{p_0}
           \prod_{i=1}^{8} \left[1 + \left(\frac{\tilde{p}}{p_{t,i}}\right)^{\alpha}\right]
           ^{(v_i - v_{i-1})/\alpha}

       with :math:`p_{t,i} = p_0 10^{L_{t,i}/20}`, :math:`L_{t,i} = 15, 25, \dots, 85` dB
       and :math:`\alpha = 1.5`.

    4. **Basis loudness**: specific loudness above the band threshold in quiet,

       .. math::
           N'_{basis}(l, z) = \max\left(N'(l, z) - N'_{LTQ}(z), 0\right)

    Parameters
    ----------
    dtype : torch.dtype, optional
        Data type of the stored tables. Default: ``torch.float64``.

    Shape
    -----
    - Input: :math:`(N_{bands}, L, S)` for all bands, or :math:`(L, S)` together
      with a band index
    - Output: two tensors of shape :math:`(N_{bands}, L)` or :math:`(L,)`

    Notes
    -----
    The basis loudness only enters the roughness model as a spectral weighting
    factor, so the transform is evaluated per block without temporal smoothing.
    """

    def __init__(self, dtype: torch.dtype = torch.float64):
        super().__init__()

        self.dtype = dtype
        self.register_buffer('threshold_pressures', P_REF * 10.0 ** (THRESHOLD_LEVELS.to(dtype) / 20.0))
        self.register_buffer('exponents', COMPRESSION_EXPONENTS.to(dtype))
        self.register_buffer('ltq', LTQ_SPECIFIC.to(dtype))

    def specific_loudness(self, p_rms: torch.Tensor) -> torch.Tensor:
        """
        Specific loudness of an effective band pressure.

        Parameters
        ----------
        p_rms : torch.Tensor
            Effective pressure in Pa, any shape.

        Returns
        -------
        torch.Tensor
            Specific loudness, same shape as input.
        """
        p_t = self.threshold_pressures.to(p_rms.device)
        v = self.exponents.to(p_rms.device)
        region_exp = (v[1:] - v[:-1]) / ALPHA

        ratio = (p_rms.unsqueeze(-1) / p_t) ** ALPHA
        regions = torch.prod((1 + ratio) ** region_exp, dim=-1)

        return CAL_N * CAL_NX * (p_rms / P_REF) * regions

    def forward(self, blocks: torch.Tensor, band: Optional[int] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Compute specific and basis loudness of band signal blocks.

        Parameters
        ----------
        blocks : torch.Tensor
            Band signal blocks. Shape ``(N_bands, L, S)`` when ``band`` is None,
            otherwise ``(L, S)`` for the band with index ``band``.

        band : int, optional
            0-based band index of a single-band input.

        Returns
        -------
        specific_loudness : torch.Tensor
            Specific loudness per block, shape ``(N_bands, L)`` or ``(L,)``.

        basis_loudness : torch.Tensor
            Basis loudness per block, same shape.
        """
        rectified = torch.clamp(blocks, min=0)
        p_rms = torch.sqrt(2 * torch.mean(rectified ** 2, dim=-1))

        specific = self.specific_loudness(p_rms)

        ltq = self.ltq.to(device=blocks.device, dtype=specific.dtype)
        if band is None:
            if blocks.ndim != 3 or blocks.shape[0] != N_BANDS:
                raise ValueError(f"Expected blocks of shape ({N_BANDS}, L, S), got {tuple(blocks.shape)}")
            threshold = ltq.unsqueeze(-1)
        else:
            if not 0 <= band < N_BANDS:
                raise ValueError(f"Band index {band} out of range [0, {N_BANDS})")
            threshold = ltq[band]

        basis = torch.clamp(specific - threshold, min=0)

        return specific, basis

    def get_parameters(self) -> dict:
        """
        Get loudness transform constants.

        Returns
        -------
        dict
            Calibration factors, thresholds and exponents.
        """
        return {
            'cal_n': CAL_N * CAL_NX,
            'threshold_levels': THRESHOLD_LEVELS,
            'exponents': self.exponents,
            'ltq': self.ltq,
        }

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"n_regions={len(self.threshold_pressures)}, num_bands={len(self.ltq)}"
