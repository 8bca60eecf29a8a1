"""
Image feature extractor backed by a pretrained MobileNetV2.

Produces one embedding per image by running the convolutional trunk and
global-average-pooling the last feature map (1280 values). No resizing
happens here: callers pass images already brought to the input geometry
by preprocessing.resize_for_extractor.

Any object exposing `embed(image) -> np.ndarray` and `dim` can stand in
for this class; the engine, indexer and live loop only rely on that.
"""

import logging
from typing import Optional

import numpy as np
import torch
import torch.nn.functional as F
from torchvision import models as torchvision_models

from .preprocessing import EMBED_INPUT_SIZE, to_rgb
from .scoring import validate_embedding

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 1280

# ImageNet statistics used by the torchvision weights
_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class MobileNetExtractor:
    """
    Stateless embedding function over a MobileNetV2 backbone.

    Load once and share; `embed` holds no per-call state beyond the
    forward pass.
    """

    dim = EMBEDDING_DIM

    def __init__(self, pretrained: bool = True, device: Optional[str] = None):
        """
        Load the backbone.

        Args:
            pretrained: Use ImageNet weights. False builds an untrained
                network (useful offline and in tests).
            device: Torch device string. Defaults to CUDA when available.
        """
        self.device = torch.device(device or ("cuda" if torch.cuda.is_available() else "cpu"))
        weights = torchvision_models.MobileNet_V2_Weights.IMAGENET1K_V1 if pretrained else None

        model = torchvision_models.mobilenet_v2(weights=weights)
        self.features = model.features.to(self.device).eval()
        logger.info(f"Loaded MobileNetV2 (pretrained={pretrained}) on {self.device}")

    def _to_tensor(self, image_np: np.ndarray) -> torch.Tensor:
        rgb = to_rgb(image_np)
        h, w = rgb.shape[:2]
        if (h, w) != (EMBED_INPUT_SIZE, EMBED_INPUT_SIZE):
            raise ValueError(
                f"Extractor input must be {EMBED_INPUT_SIZE}x{EMBED_INPUT_SIZE}, "
                f"got {w}x{h}"
            )
        arr = (rgb.astype(np.float32) / 255.0 - _MEAN) / _STD
        tensor = torch.from_numpy(arr.transpose(2, 0, 1).copy())
        return tensor.unsqueeze(0).to(self.device)

    @torch.no_grad()
    def embed(self, image_np: np.ndarray) -> np.ndarray:
        """
        Compute the embedding of one extractor-ready RGB image.

        Returns:
            Float32 vector of EMBEDDING_DIM values.

        Raises:
            ValueError: If the image is not at the input geometry.
            InvalidEmbeddingError: If the network produced NaN/Inf.
        """
        fmap = self.features(self._to_tensor(image_np))
        pooled = F.adaptive_avg_pool2d(fmap, 1).flatten(1)
        vector = pooled[0].cpu().numpy().astype(np.float32)
        return validate_embedding(vector)
