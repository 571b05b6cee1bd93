"""Sound quality models."""

from torch_sqm.models.ecma418_2 import (ECMA418Roughness,
                                        MonoRoughness,
                                        RoughnessResult,
                                        StereoRoughness,
                                        StereoWithBinauralRoughness,
                                        roughness_ecma418_2)

__all__ = ["ECMA418Roughness",
           "RoughnessResult",
           "MonoRoughness",
           "StereoRoughness",
           "StereoWithBinauralRoughness",
           "roughness_ecma418_2"
           ]
