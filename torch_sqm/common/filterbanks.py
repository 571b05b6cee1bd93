"""
Half-Bark Auditory Filterbank
=============================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

Critical-band-rate utilities and the auditory filterbank of the ECMA-418-2
hearing model: 53 overlapping bandpass filters spaced by half a Bark between
0.5 and 26.5 Bark, each realised as a fifth-order complex (one-sided)
recursive filter at 48 kHz.

References
----------
.. [1] ECMA International, "ECMA-418-2: Psychoacoustic metrics for ITT equipment -
       Part 2 (models based on human perception)," 2nd ed., Geneva, 2024.

.. [2] R. Sottek, "A hearing model approach to time-varying loudness,"
       *Acta Acustica united with Acustica*, vol. 102, no. 4, pp. 725-744, 2016.
"""

import math
from typing import Optional, Sequence, Union

import torch
import torch.nn as nn

from .filters import apply_iir
from .preprocessing import FS_MODEL

# ------------------------------------------------ Constants -------------------------------------------------

DELTA_FREQ0 = 81.9289     # critical bandwidth at low frequencies (Hz)
C_BARK = 0.1618           # critical-band-rate curvature (1/Bark)
DZ = 0.5                  # half-Bark spacing
N_BANDS = 53
FILTER_ORDER = 5

# ------------------------------------------------- Utilities ------------------------------------------------

def halfbark_scale(dz: float = DZ, z_max: float = 26.5) -> torch.Tensor:
    """
    Critical-band-rate values of the ECMA-418-2 bands.

    Parameters
    ----------
    dz : float, optional
        Band spacing in Bark. Default: 0.5.

    z_max : float, optional
        Highest band in Bark. Default: 26.5.

    Returns
    -------
    torch.Tensor
        Band values ``dz, 2*dz, ..., z_max`` (53 values by default), float64.
    """
    n = int(round(z_max / dz))
    return torch.arange(1, n + 1, dtype=torch.float64) * dz


def halfbark2fc(z: torch.Tensor) -> torch.Tensor:
    r"""
    Convert critical-band rate (Bark) to centre frequency in Hz.

    .. math::
        F(z) = \frac{\Delta f_0}{c} \sinh(c \cdot z)

    with :math:`\Delta f_0 = 81.9289` Hz and :math:`c = 0.1618`.

    Parameters
    ----------
    z : torch.Tensor
        Critical-band rate in Bark. Any shape.

    Returns
    -------
    torch.Tensor
        Frequencies in Hz, same shape as input.

    See Also
    --------
    fc2halfbark : Inverse transformation.
    """
    z = torch.as_tensor(z, dtype=torch.float64)
    return (DELTA_FREQ0 / C_BARK) * torch.sinh(C_BARK * z)


def fc2halfbark(fc: torch.Tensor) -> torch.Tensor:
    r"""
    Convert frequency in Hz to critical-band rate (Bark).

    .. math::
        z(f) = \frac{1}{c} \operatorname{asinh}\left(\frac{c f}{\Delta f_0}\right)

    Parameters
    ----------
    fc : torch.Tensor
        Frequencies in Hz. Any shape.

    Returns
    -------
    torch.Tensor
        Critical-band rate in Bark, same shape as input.
    """
    fc = torch.as_tensor(fc, dtype=torch.float64)
    return torch.asinh(C_BARK * fc / DELTA_FREQ0) / C_BARK


def critical_bandwidth(fc: torch.Tensor) -> torch.Tensor:
    r"""
    Critical bandwidth at a given centre frequency.

    .. math::
        \Delta f(f_c) = \sqrt{\Delta f_0^2 + (c \cdot f_c)^2}

    Parameters
    ----------
    fc : torch.Tensor
        Centre frequencies in Hz.

    Returns
    -------
    torch.Tensor
        Bandwidths in Hz.
    """
    fc = torch.as_tensor(fc, dtype=torch.float64)
    return torch.sqrt(DELTA_FREQ0 ** 2 + (C_BARK * fc) ** 2)


# Band centre frequencies, fixed for every analysis
BAND_CENTRE_FREQS = halfbark2fc(halfbark_scale())

# ------------------------------------------------ Filterbanks ------------------------------------------------

class HalfBarkFilterbank(nn.Module):
    r"""
    ECMA-418-2 auditory filterbank with 53 half-Bark spaced bands.

    Each band is a fifth-order complex recursive filter whose impulse response
    approximates a gammatone-like envelope centred on :math:`F(z)`. The real
    part of the (one-sided) complex output, doubled, is the band signal.

    Algorithm Overview
    ------------------
    For band centre frequency :math:`F` and bandwidth :math:`\Delta f`:

    1. **Time constant and pole radius**:

       .. math::
           \tau = \frac{1}{2^{2k-1}} \frac{(2k-2)!}{((k-1)!)^2} \frac{1}{\Delta f},
           \quad d = e^{-1/(f_s \tau)}

    2. **Denominator** (:math:`m = 0, \dots, k`):

       .. math::
           a_m = \binom{k}{m} (-d)^m e^{i 2\pi F m / f_s}

    3. **Numerator** (:math:`m = 0, \dots, k-1`), with :math:`e = [0, 1, 11, 11, 1]`:

       .. math::
           b_m = \frac{(1-d)^k}{\sum_{i=1}^{k-1} e_i d^i} e_m d^m e^{i 2\pi F m / f_s}

       normalising the passband gain at :math:`F` to unity.

    4. **Output**: :math:`y_z(t) = 2 \, \Re\{ (b * x)(t) / a \}`.

    Parameters
    ----------
    fs : int, optional
        Sampling rate in Hz. Only 48000 is supported. Default: 48000.

    order : int, optional
        Filter order :math:`k`. Default: 5.

    dtype : torch.dtype, optional
        Real data type of the band signals. Default: ``torch.float64``.

    Attributes
    ----------
    z : torch.Tensor
        Critical-band rates, shape ``[53]``.

    fc : torch.Tensor
        Band centre frequencies in Hz, shape ``[53]``.

    bandwidth : torch.Tensor
        Critical bandwidths in Hz, shape ``[53]``.

    b : torch.Tensor
        Complex numerator coefficients, shape ``[53, order]``.

    a : torch.Tensor
        Complex denominator coefficients, shape ``[53, order + 1]``.

    Shape
    -----
    - Input: :math:`(..., T)`
    - Output: :math:`(..., N_{bands}, T)`

    Examples
    --------
    >>> import torch
    >>> from torch_sqm.common.filterbanks import HalfBarkFilterbank
    >>>
    >>> fb = HalfBarkFilterbank()
    >>> x = torch.randn(48000, dtype=torch.float64)
    >>> fb(x).shape
    torch.Size([53, 48000])
    >>> fb(x, bands=[17]).shape
    torch.Size([1, 48000])
    """

    def __init__(self,
                 fs: int = FS_MODEL,
                 order: int = FILTER_ORDER,
                 dtype: torch.dtype = torch.float64):
        super().__init__()

        if fs != FS_MODEL:
            raise ValueError(f"HalfBarkFilterbank is defined at {FS_MODEL} Hz only, got fs={fs}")
        if order != FILTER_ORDER:
            raise ValueError(f"Only order {FILTER_ORDER} is defined, got {order}")

        self.fs = fs
        self.order = order
        self.dtype = dtype
        self.num_channels = N_BANDS

        z = halfbark_scale()
        fc = halfbark2fc(z)
        bandwidth = critical_bandwidth(fc)
        self.register_buffer('z', z.to(dtype))
        self.register_buffer('fc', fc.to(dtype))
        self.register_buffer('bandwidth', bandwidth.to(dtype))

        b, a = self._design_coefficients(fc, bandwidth)
        self.register_buffer('b', b)
        self.register_buffer('a', a)

    def _design_coefficients(self, fc: torch.Tensor, bandwidth: torch.Tensor):
        """
        Compute the complex recursive filter coefficients of all bands.

        Returns
        -------
        b : torch.Tensor
            Numerator coefficients, complex128, shape ``[53, k]``.

        a : torch.Tensor
            Denominator coefficients, complex128, shape ``[53, k + 1]``.
        """
        k = self.order
        scale = (1 / 2 ** (2 * k - 1)) * math.factorial(2 * k - 2) / math.factorial(k - 1) ** 2
        tau = scale / bandwidth
        d = torch.exp(-1.0 / (self.fs * tau)).unsqueeze(-1)  # [53, 1]

        m_a = torch.arange(k + 1, dtype=torch.float64)
        m_b = torch.arange(k, dtype=torch.float64)
        binom = torch.tensor([math.comb(k, m) for m in range(k + 1)], dtype=torch.float64)
        e_i = torch.tensor([0.0, 1.0, 11.0, 11.0, 1.0], dtype=torch.float64)

        phase_a = torch.exp(1j * 2 * math.pi * fc.unsqueeze(-1) * m_a / self.fs)
        phase_b = torch.exp(1j * 2 * math.pi * fc.unsqueeze(-1) * m_b / self.fs)

        a = binom * (-d) ** m_a * phase_a
        norm = (1 - d) ** k / torch.sum(e_i[1:] * d ** m_b[1:], dim=-1, keepdim=True)
        b = norm * e_i * d ** m_b * phase_b

        return b.to(torch.complex128), a.to(torch.complex128)

    def forward(self,
                x: torch.Tensor,
                bands: Optional[Union[int, Sequence[int]]] = None) -> torch.Tensor:
        """
        Filter a signal into half-Bark bands.

        Parameters
        ----------
        x : torch.Tensor
            Signal at 48 kHz, shape (..., T).

        bands : int or sequence of int, optional
            Band indices (0-based) to compute. ``None`` computes all 53 bands.
            Filtering one band at a time keeps memory bounded for long signals.

        Returns
        -------
        torch.Tensor
            Band signals, shape (..., n_selected, T).
        """
        if bands is None:
            bands = range(self.num_channels)
        elif isinstance(bands, int):
            bands = [bands]

        outputs = []
        for i in bands:
            if not 0 <= i < self.num_channels:
                raise ValueError(f"Band index {i} out of range [0, {self.num_channels})")
            y = apply_iir(x, self.b[i], self.a[i])
            outputs.append(2 * y.real.to(self.dtype))

        return torch.stack(outputs, dim=-2)

    def get_parameters(self) -> dict:
        """
        Get filterbank parameters.

        Returns
        -------
        dict
            Dictionary with sampling rate, order and band layout.
        """
        return {
            'fs': self.fs,
            'order': self.order,
            'num_channels': self.num_channels,
            'fc': self.fc,
            'bandwidth': self.bandwidth,
        }

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return (f"fs={self.fs}, order={self.order}, num_channels={self.num_channels}, "
                f"fc_range=[{self.fc[0].item():.1f}, {self.fc[-1].item():.1f}] Hz")
