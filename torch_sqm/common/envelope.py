"""
Band Envelope Extraction
========================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

Envelope of half-Bark band blocks as the magnitude of the analytic signal,
downsampled to the 1500 Hz modulation-analysis rate.
"""

import torch
import torch.nn as nn

from .filters import torch_hilbert

DOWNSAMPLE = 32           # 48 kHz -> 1500 Hz


class HilbertEnvelope(nn.Module):
    r"""
    Downsampled Hilbert envelope of signal blocks.

    .. math::
        p_E(i, l, z) = \left| \mathcal{H}\{p(n, l, z)\} \right|_{n = i \cdot D}

    The analytic signal is computed over the full block (FFT method) before
    keeping every :math:`D`-th sample, starting with the first.

    Parameters
    ----------
    downsample : int, optional
        Decimation factor :math:`D`. Default: 32.

    Shape
    -----
    - Input: :math:`(..., S)`
    - Output: :math:`(..., \lceil S / D \rceil)`

    Examples
    --------
    >>> import torch
    >>> from torch_sqm.common.envelope import HilbertEnvelope
    >>>
    >>> env = HilbertEnvelope()
    >>> blocks = torch.randn(12, 16384, dtype=torch.float64)
    >>> env(blocks).shape
    torch.Size([12, 512])
    """

    def __init__(self, downsample: int = DOWNSAMPLE):
        super().__init__()

        if downsample < 1:
            raise ValueError(f"downsample must be >= 1, got {downsample}")
        self.downsample = downsample

    def forward(self, blocks: torch.Tensor) -> torch.Tensor:
        """
        Compute the envelope along the last dimension.

        Parameters
        ----------
        blocks : torch.Tensor
            Real block signals, shape (..., S).

        Returns
        -------
        torch.Tensor
            Downsampled envelopes, shape (..., ceil(S / downsample)).
        """
        envelope = torch.abs(torch_hilbert(blocks))
        return envelope[..., ::self.downsample]

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"downsample={self.downsample}"
