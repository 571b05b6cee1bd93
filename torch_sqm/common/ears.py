"""
Outer & Middle Ear Filter
=========================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

This module implements the fixed outer and middle ear transmission filter of the
ECMA-418-2 hearing model. The free-frontal response is a cascade of four
second-order sections at 48 kHz (middle-ear shaping and ear-canal resonance).
For diffuse-field presentation a linear-phase FIR correction is cascaded,
realising the diffuse-minus-free outer ear difference of ANSI S3.4-2007.

References
----------
.. [1] ECMA International, "ECMA-418-2: Psychoacoustic metrics for ITT equipment -
       Part 2 (models based on human perception)," 2nd ed., Geneva, 2024.

.. [2] ANSI S3.4-2007, "Procedure for the Computation of Loudness of Steady Sounds,"
       American National Standards Institute, 2007.

.. [3] R. Sottek, "Modelle zur Signalverarbeitung im menschlichen Gehör,"
       PhD thesis, RWTH Aachen University, 1993.
"""

from typing import Literal, Tuple

import numpy as np
import torch
import torch.nn as nn
from scipy import signal as scipy_signal

from .filters import apply_sos, torch_pchip_interp
from .preprocessing import FS_MODEL

# -------------------------------------------------- Data ----------------------------------------------------

# Free-frontal outer & middle ear cascade at 48 kHz
# Format: [b0, b1, b2, a0, a1, a2] per section
ECMA418_EAR_SOS = torch.tensor([
    [1.015896020464353, -1.925298877776954, 0.922118638062700, 1.0, -1.925298877776954, 0.938014658527054],
    [0.958943067130383, -1.806088471437969, 0.876438024307545, 1.0, -1.806088471437969, 0.835381091437928],
    [0.961887132510259, -1.763200304628891, 0.821817389739522, 1.0, -1.763200304628891, 0.783704522249781],
    [1.225803325945328, -1.434571099726086, 0.300491963893107, 1.0, -1.434571099726086, 0.526295289838435],
], dtype=torch.float64)

# Diffuse-field minus free-field outer ear transfer (ANSI S3.4-2007, Tables B.1 & B.2)
# Format: [frequency (Hz), gain difference (dB)]
ANSI_DIFFUSE_MINUS_FREE = torch.tensor([
    [20.0,      0.0],
    [160.0,     0.0],
    [200.0,    -0.1],
    [250.0,    -0.4],
    [315.0,    -0.4],
    [400.0,     0.0],
    [500.0,     0.0],
    [630.0,    -0.3],
    [750.0,     0.0],
    [800.0,     0.3],
    [1000.0,    1.2],
    [1250.0,    2.1],
    [1500.0,    1.6],
    [1600.0,    0.6],
    [2000.0,   -1.8],
    [2500.0,   -1.9],
    [3000.0,   -0.8],
    [3150.0,   -0.8],
    [4000.0,   -1.5],
    [5000.0,    0.1],
    [6000.0,    1.8],
    [6300.0,    2.3],
    [8000.0,    6.7],
    [9000.0,    7.1],
    [10000.0,   6.6],
    [11200.0,   2.6],
    [12500.0,  -0.9],
    [14000.0,   1.3],
    [15000.0,   4.6],
    [16000.0,  -0.5],
    [20000.0,  -0.5],
], dtype=torch.float64)

FieldType = Literal['free-frontal', 'diffuse']
FIELD_TYPES = ('free-frontal', 'diffuse')

# ------------------------------------------ Outer & Middle Ear ----------------------------------------------

class OuterMiddleEarFilter(nn.Module):
    r"""
    ECMA-418-2 outer and middle ear filter.

    Applies the fixed transmission from free-field (or diffuse-field) sound
    pressure to the cochlea input used by the ECMA-418-2 hearing model. The
    filter runs at the 48 kHz model rate only.

    Algorithm Overview
    ------------------
    1. **Free-frontal response**: cascade of four biquads

       .. math::
           H_{ff}(z) = \prod_{s=1}^{4} \frac{b_{0,s} + b_{1,s} z^{-1} + b_{2,s} z^{-2}}
                                        {1 + a_{1,s} z^{-1} + a_{2,s} z^{-2}}

       The first three sections shape the middle-ear transmission around
       1-2 kHz, the fourth models the ear-canal resonance near 3 kHz.

    2. **Diffuse-field correction** (``field_type='diffuse'``): the tabulated
       diffuse-minus-free outer ear difference is interpolated (PCHIP) on a
       dense grid, converted to linear amplitude and realised as a 513-tap
       linear-phase FIR (``scipy.signal.firwin2``). Its group delay is removed
       so both field types stay time-aligned.

    Parameters
    ----------
    field_type : {'free-frontal', 'diffuse'}, optional
        Sound field of the recording. Default: ``'free-frontal'``.

    fs : int, optional
        Sampling rate in Hz. Only 48000 is supported. Default: 48000.

    diffuse_numtaps : int, optional
        Length of the diffuse-field FIR (odd). Default: 513.

    dtype : torch.dtype, optional
        Data type for filter coefficients. Default: ``torch.float64``.

    Attributes
    ----------
    sos : torch.Tensor
        Free-frontal biquad cascade, shape ``[4, 6]``.

    fir_coeffs : torch.Tensor
        Diffuse-field FIR coefficients, shape ``[diffuse_numtaps]``. Empty for
        ``'free-frontal'``.

    Shape
    -----
    - Input: :math:`(..., T)`
    - Output: :math:`(..., T)`

    Raises
    ------
    ValueError
        If ``field_type`` is not one of the supported values, or ``fs`` is not
        48000.

    Examples
    --------
    >>> import torch
    >>> from torch_sqm.common.ears import OuterMiddleEarFilter
    >>>
    >>> ear = OuterMiddleEarFilter(field_type='free-frontal')
    >>> x = torch.randn(2, 48000, dtype=torch.float64)
    >>> ear(x).shape
    torch.Size([2, 48000])
    >>>
    >>> freqs, H_db = ear.get_frequency_response(nfft=8192)
    """

    def __init__(self,
                 field_type: FieldType = 'free-frontal',
                 fs: int = FS_MODEL,
                 diffuse_numtaps: int = 513,
                 dtype: torch.dtype = torch.float64):
        super().__init__()

        if field_type not in FIELD_TYPES:
            raise ValueError(f"Invalid field_type: {field_type!r}. Use 'free-frontal' or 'diffuse'.")
        if fs != FS_MODEL:
            raise ValueError(f"OuterMiddleEarFilter is defined at {FS_MODEL} Hz only, got fs={fs}")
        if diffuse_numtaps < 3 or diffuse_numtaps % 2 == 0:
            raise ValueError(f"diffuse_numtaps must be an odd integer >= 3, got {diffuse_numtaps}")

        self.field_type = field_type
        self.fs = fs
        self.diffuse_numtaps = diffuse_numtaps
        self.dtype = dtype

        self.register_buffer('sos', ECMA418_EAR_SOS.to(dtype))

        if field_type == 'diffuse':
            fir_coeffs = self._design_diffuse_correction()
        else:
            fir_coeffs = torch.zeros(0, dtype=dtype)
        self.register_buffer('fir_coeffs', fir_coeffs)

    def _design_diffuse_correction(self) -> torch.Tensor:
        """
        Design the diffuse-field correction FIR.

        Returns
        -------
        torch.Tensor
            Linear-phase FIR coefficients, shape ``[diffuse_numtaps]``.
        """
        nyquist = self.fs / 2.0
        fvec = torch.arange(20.0, 20001.0, 10.0, dtype=torch.float64)
        gains_db = torch_pchip_interp(ANSI_DIFFUSE_MINUS_FREE[:, 0],
                                      ANSI_DIFFUSE_MINUS_FREE[:, 1],
                                      fvec)
        gains = 10.0 ** (gains_db / 20.0)

        # DC and Nyquist boundary points
        freq = np.concatenate([[0.0], fvec.numpy(), [nyquist]])
        gain = np.concatenate([gains[:1].numpy(), gains.numpy(), gains[-1:].numpy()])

        fir = scipy_signal.firwin2(self.diffuse_numtaps, freq, gain, fs=self.fs)
        return torch.from_numpy(fir).to(self.dtype)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Apply outer and middle ear filtering along the last dimension.

        Parameters
        ----------
        x : torch.Tensor
            Pressure signal at 48 kHz, shape (..., T).

        Returns
        -------
        torch.Tensor
            Filtered signal, same shape as input.
        """
        y = apply_sos(x, self.sos)

        if self.field_type == 'diffuse':
            delay = (self.diffuse_numtaps - 1) // 2
            y_np = scipy_signal.oaconvolve(y.detach().cpu().numpy(),
                                           self.fir_coeffs.cpu().numpy().reshape((1,) * (y.ndim - 1) + (-1,)),
                                           mode='full', axes=-1)
            y_np = y_np[..., delay:delay + x.shape[-1]]
            y = torch.from_numpy(np.ascontiguousarray(y_np)).to(device=x.device, dtype=x.dtype)

        return y

    def get_frequency_response(self, nfft: int = 8192) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Compute the magnitude response of the filter.

        Parameters
        ----------
        nfft : int, optional
            Number of frequency points between 0 and Nyquist. Default: 8192.

        Returns
        -------
        freqs : torch.Tensor
            Frequency vector in Hz. Shape: [nfft].

        response : torch.Tensor
            Magnitude response in dB. Shape: [nfft].
        """
        freqs, H = scipy_signal.sosfreqz(self.sos.cpu().numpy(), worN=nfft, fs=self.fs)
        if self.field_type == 'diffuse':
            _, H_fir = scipy_signal.freqz(self.fir_coeffs.cpu().numpy(), worN=nfft, fs=self.fs)
            H = H * np.abs(H_fir)

        magnitude_db = 20 * np.log10(np.abs(H) + 1e-12)
        return torch.from_numpy(freqs).to(self.dtype), torch.from_numpy(magnitude_db).to(self.dtype)

    def get_parameters(self) -> dict:
        """
        Get filter parameters.

        Returns
        -------
        dict
            Dictionary with field type, sampling rate and filter sizes.
        """
        return {
            'field_type': self.field_type,
            'fs': self.fs,
            'n_sections': self.sos.shape[0],
            'diffuse_numtaps': self.diffuse_numtaps if self.field_type == 'diffuse' else 0,
        }

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"field_type='{self.field_type}', fs={self.fs}, n_sections={self.sos.shape[0]}"
