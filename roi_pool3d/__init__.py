"""
3D ROI adaptive max pooling for volumetric feature maps
Forward pooling, backward gradient routing and autograd integration
"""

from .coords import RegionBox, decode_flat, encode_flat, scale_region
from .pooling import roi_pool3d_forward, roi_pool3d_backward
from .function import ROIPool3d, ROIPool3dFunction, roi_pool3d

__version__ = "1.0.0"

__all__ = [
    "RegionBox",
    "decode_flat",
    "encode_flat",
    "scale_region",
    "roi_pool3d_forward",
    "roi_pool3d_backward",
    "roi_pool3d",
    "ROIPool3d",
    "ROIPool3dFunction",
]
