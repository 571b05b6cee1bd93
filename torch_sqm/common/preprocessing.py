"""
Signal Pre-processing
=====================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

Stages that bring a calibrated pressure signal to the form expected by the
ECMA-418-2 hearing model: resampling to the 48 kHz model rate, a short
raised-cosine fade-in, zero padding aligned with the analysis blocks, and
segmentation into overlapping blocks.

References
----------
.. [1] ECMA International, "ECMA-418-2: Psychoacoustic metrics for ITT equipment -
       Part 2 (models based on human perception)," 2nd ed., Geneva, 2024.
"""

import math
from typing import Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F
import torchaudio.transforms as T

# ------------------------------------------------ Constants -------------------------------------------------

FS_MODEL = 48000          # model sampling rate (Hz)
BLOCK_SIZE = 16384        # analysis block length at 48 kHz (samples)
BLOCK_OVERLAP = 0.75      # block overlap ratio
HOP_SIZE = int((1 - BLOCK_OVERLAP) * BLOCK_SIZE)
FADE_SAMPLES = 240        # 5 ms raised-cosine fade-in at 48 kHz

# ------------------------------------------------ Resampling ------------------------------------------------

class Resampler(nn.Module):
    r"""
    Resample a signal to the 48 kHz model rate.

    Thin wrapper around ``torchaudio.transforms.Resample`` (windowed sinc with
    Kaiser window). When the input rate already equals the target rate the
    signal is passed through untouched.

    Parameters
    ----------
    fs : int
        Input sampling rate in Hz. Must be a positive integer.

    fs_target : int, optional
        Output sampling rate in Hz. Default: 48000.

    dtype : torch.dtype, optional
        Data type of the resampling kernel. Default: ``torch.float64``.

    Shape
    -----
    - Input: :math:`(..., T)`
    - Output: :math:`(..., \lceil T \cdot f_{s,target} / f_s \rceil)`

    Raises
    ------
    ValueError
        If ``fs`` or ``fs_target`` is not a positive integer.
    """

    def __init__(self, fs: int, fs_target: int = FS_MODEL, dtype: torch.dtype = torch.float64):
        super().__init__()

        for name, rate in (('fs', fs), ('fs_target', fs_target)):
            if isinstance(rate, bool) or not float(rate).is_integer() or rate <= 0:
                raise ValueError(f"{name} must be a positive integer sampling rate, got {rate}")

        self.fs = int(fs)
        self.fs_target = int(fs_target)
        self.dtype = dtype

        if self.fs != self.fs_target:
            self.resampler = T.Resample(orig_freq=self.fs,
                                        new_freq=self.fs_target,
                                        resampling_method='sinc_interp_kaiser',
                                        dtype=dtype)
        else:
            self.resampler = None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Resample along the last dimension.

        Parameters
        ----------
        x : torch.Tensor
            Signal, shape (..., T).

        Returns
        -------
        torch.Tensor
            Resampled signal, shape (..., T_target).
        """
        if self.resampler is None:
            return x
        self.resampler = self.resampler.to(x.device)
        return self.resampler(x.to(self.dtype))

    def output_length(self, n_samples: int) -> int:
        """Number of samples produced for an input of ``n_samples`` samples."""
        return math.ceil(n_samples * self.fs_target / self.fs)

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"fs={self.fs}, fs_target={self.fs_target}"

# ------------------------------------------------ Fade & Pad ------------------------------------------------

class FadeInPadding(nn.Module):
    r"""
    Raised-cosine fade-in followed by zero padding.

    The first ``fade_samples`` samples are weighted with

    .. math::
        w[n] = \frac{1}{2} - \frac{1}{2}\cos\left(\frac{\pi n}{N_{fade}}\right),
        \quad n = 0, \dots, N_{fade} - 1

    and ``pad_start`` (``pad_end``) zeros are prepended (appended). Padding the
    start by one block length makes the first analysis block end on the first
    signal sample, so block ``l`` is centred in time at ``l * hop / fs``.

    Parameters
    ----------
    fade_samples : int, optional
        Fade-in length in samples. Default: 240 (5 ms at 48 kHz).

    pad_start : int, optional
        Zeros prepended. Default: 16384.

    pad_end : int, optional
        Zeros appended. Default: 0.

    dtype : torch.dtype, optional
        Data type of the fade window. Default: ``torch.float64``.

    Shape
    -----
    - Input: :math:`(..., T)`
    - Output: :math:`(..., pad_{start} + T + pad_{end})`
    """

    def __init__(self,
                 fade_samples: int = FADE_SAMPLES,
                 pad_start: int = BLOCK_SIZE,
                 pad_end: int = 0,
                 dtype: torch.dtype = torch.float64):
        super().__init__()

        if fade_samples < 0 or pad_start < 0 or pad_end < 0:
            raise ValueError(f"fade_samples, pad_start and pad_end must be non-negative, "
                             f"got {fade_samples}, {pad_start}, {pad_end}")

        self.fade_samples = fade_samples
        self.pad_start = pad_start
        self.pad_end = pad_end

        n = torch.arange(fade_samples, dtype=dtype)
        self.register_buffer('fade_window', 0.5 - 0.5 * torch.cos(math.pi * n / max(fade_samples, 1)))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Apply fade-in and padding along the last dimension.

        Parameters
        ----------
        x : torch.Tensor
            Signal, shape (..., T).

        Returns
        -------
        torch.Tensor
            Faded and padded signal.
        """
        n_fade = min(self.fade_samples, x.shape[-1])
        window = self.fade_window[:n_fade].to(device=x.device, dtype=x.dtype)
        x = torch.cat([x[..., :n_fade] * window, x[..., n_fade:]], dim=-1)

        return F.pad(x, (self.pad_start, self.pad_end))

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"fade_samples={self.fade_samples}, pad_start={self.pad_start}, pad_end={self.pad_end}"

# ----------------------------------------------- Segmentation -----------------------------------------------

def num_blocks(n_samples: int,
               block_size: int = BLOCK_SIZE,
               overlap: float = BLOCK_OVERLAP,
               end_shrink: bool = True) -> int:
    """
    Number of analysis blocks produced by :func:`segment_signal`.

    Parameters
    ----------
    n_samples : int
        Signal length in samples.

    block_size : int, optional
        Block length in samples. Default: 16384.

    overlap : float, optional
        Overlap ratio in [0, 1). Default: 0.75.

    end_shrink : bool, optional
        If True, the signal tail is covered by a final zero-padded block.
        If False, only complete blocks are returned. Default: True.

    Returns
    -------
    int
        Number of blocks (at least 1).
    """
    hop = int((1 - overlap) * block_size)
    excess = max(n_samples - block_size, 0)
    if end_shrink:
        return math.ceil(excess / hop) + 1
    return excess // hop + 1


def segment_signal(x: torch.Tensor,
                   block_size: int = BLOCK_SIZE,
                   overlap: float = BLOCK_OVERLAP,
                   end_shrink: bool = True) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Segment a signal into overlapping blocks.

    Parameters
    ----------
    x : torch.Tensor
        Signal, shape (..., T).

    block_size : int, optional
        Block length in samples. Default: 16384.

    overlap : float, optional
        Overlap ratio in [0, 1). Default: 0.75 (hop of 4096 samples).

    end_shrink : bool, optional
        If True, the tail of the signal that does not fill a block is zero-padded
        into a final block instead of being dropped. Default: True.

    Returns
    -------
    blocks : torch.Tensor
        Blocks, shape (..., n_blocks, block_size).

    block_starts : torch.Tensor
        Start sample (0-based) of each block, shape (n_blocks,).

    Raises
    ------
    ValueError
        If ``overlap`` is outside [0, 1) or the hop size is zero.
    """
    if not 0 <= overlap < 1:
        raise ValueError(f"overlap must be in [0, 1), got {overlap}")
    hop = int((1 - overlap) * block_size)
    if hop < 1:
        raise ValueError(f"block_size={block_size} and overlap={overlap} give a zero hop size")

    n_samples = x.shape[-1]
    n_blocks = num_blocks(n_samples, block_size, overlap, end_shrink)

    # Zero-pad so the last block is complete
    n_needed = (n_blocks - 1) * hop + block_size
    if n_needed > n_samples:
        x = F.pad(x, (0, n_needed - n_samples))
    else:
        x = x[..., :n_needed]

    blocks = x.unfold(-1, block_size, hop)
    block_starts = torch.arange(n_blocks, device=x.device) * hop

    return blocks, block_starts
