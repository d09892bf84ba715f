"""
File: model_compressor.py
Description: Compression of serialized model weights.
A model buffer is a raw little-endian float32 dump. Two compressed encodings are produced:
- Quantized: [min f32][max f32][count i32][count x u8], an 8-bit affine mapping of every weight
- Pruned: [count i32][count x (index i32, value f32)], the 30% largest-magnitude weights
Distillation is a placeholder that only allocates a correctly sized student buffer.
"""

import logging
import random
import struct
from typing import Optional

import numpy as np

from .const import QUANTIZATION_LEVELS, PRUNING_SPARSITY, DISTILL_WEIGHT_RANGE
from .errors import MalformedBuffer
from .models import CompressionStats, NetworkArchitecture

_LOGGER = logging.getLogger(__name__)

FLOAT_DTYPE = np.dtype("<f4")
QUANT_HEADER = struct.Struct("<ffi")
COUNT_HEADER = struct.Struct("<i")
PRUNED_ENTRY_DTYPE = np.dtype([("index", "<i4"), ("value", "<f4")])


def weights_from_buffer(buffer: bytes) -> np.ndarray:
    """Decode a raw float32 buffer into an array."""
    if len(buffer) % FLOAT_DTYPE.itemsize:
        raise MalformedBuffer(f"Buffer length {len(buffer)} is not a multiple of {FLOAT_DTYPE.itemsize}")
    return np.frombuffer(buffer, dtype=FLOAT_DTYPE)


def weights_to_buffer(weights) -> bytes:
    """Encode weights as a raw float32 buffer."""
    return np.asarray(weights, dtype=FLOAT_DTYPE).tobytes()


class ModelCompressor:
    """Quantization, magnitude pruning and (stub) distillation of weight buffers."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    # ==================== QUANTIZATION ====================

    def quantize(self, buffer: bytes) -> bytes:
        """
        Quantize float32 weights to 8 bits.

        Every value maps to round((v - min) / scale) with scale = (max - min) / 255.
        A constant buffer has scale 0 and all its values map to 0.
        """
        weights = weights_from_buffer(buffer)
        count = len(weights)

        if count == 0:
            return QUANT_HEADER.pack(0.0, 0.0, 0)

        w_min = float(weights.min())
        w_max = float(weights.max())
        scale = (w_max - w_min) / QUANTIZATION_LEVELS

        if scale > 0:
            levels = np.rint((weights.astype(np.float64) - w_min) / scale)
            quantized = np.clip(levels, 0, QUANTIZATION_LEVELS).astype(np.uint8)
        else:
            quantized = np.zeros(count, dtype=np.uint8)

        _LOGGER.debug("Quantized %d weights (min=%.4f, max=%.4f, scale=%.6f)", count, w_min, w_max, scale)
        return QUANT_HEADER.pack(w_min, w_max, count) + quantized.tobytes()

    def dequantize(self, buffer: bytes) -> bytes:
        """Inverse of quantize. Each weight is recovered to within scale / 2."""
        if len(buffer) < QUANT_HEADER.size:
            raise MalformedBuffer("Quantized buffer is shorter than its header")

        w_min, w_max, count = QUANT_HEADER.unpack_from(buffer)
        payload = buffer[QUANT_HEADER.size:]
        if count < 0 or len(payload) != count:
            raise MalformedBuffer(f"Quantized buffer declares {count} values but carries {len(payload)}")

        scale = (w_max - w_min) / QUANTIZATION_LEVELS
        levels = np.frombuffer(payload, dtype=np.uint8).astype(np.float64)
        return weights_to_buffer(w_min + levels * scale)

    # ==================== PRUNING ====================

    def prune(self, buffer: bytes, sparsity: float = PRUNING_SPARSITY) -> bytes:
        """
        Unstructured magnitude pruning.

        The int(n * sparsity) smallest-magnitude weights are dropped (ties keep the lower index
        first in the drop order). Survivors are written in index order.
        """
        weights = weights_from_buffer(buffer)
        order = np.argsort(np.abs(weights), kind="stable")
        dropped = int(len(weights) * sparsity)
        survivors = np.sort(order[dropped:])

        entries = np.empty(len(survivors), dtype=PRUNED_ENTRY_DTYPE)
        entries["index"] = survivors
        entries["value"] = weights[survivors]

        _LOGGER.debug("Pruned %d of %d weights", dropped, len(weights))
        return COUNT_HEADER.pack(len(survivors)) + entries.tobytes()

    def expand_pruned_model(self, buffer: bytes, original_size: int) -> bytes:
        """
        Rebuild a dense buffer from a pruned one.

        Args:
            buffer: Pruned encoding
            original_size: Size in bytes of the dense buffer before pruning

        Returns:
            Dense float32 buffer, zero everywhere except the recorded indices
        """
        if len(buffer) < COUNT_HEADER.size:
            raise MalformedBuffer("Pruned buffer is shorter than its header")
        if original_size < 0 or original_size % FLOAT_DTYPE.itemsize:
            raise MalformedBuffer(f"Original size {original_size} is not a whole number of weights")

        (count,) = COUNT_HEADER.unpack_from(buffer)
        payload = buffer[COUNT_HEADER.size:]
        if count < 0 or len(payload) != count * PRUNED_ENTRY_DTYPE.itemsize:
            raise MalformedBuffer(f"Pruned buffer declares {count} entries but carries {len(payload)} bytes")

        entries = np.frombuffer(payload, dtype=PRUNED_ENTRY_DTYPE)
        dense = np.zeros(original_size // FLOAT_DTYPE.itemsize, dtype=FLOAT_DTYPE)

        indices = entries["index"]
        if len(indices) and (indices.min() < 0 or indices.max() >= len(dense)):
            raise MalformedBuffer("Pruned buffer references weights outside the original model")

        dense[indices] = entries["value"]
        return dense.tobytes()

    # ==================== DISTILLATION ====================

    def distill_model(
        self,
        teacher_buffer: bytes,
        teacher_arch: NetworkArchitecture,
        student_arch: NetworkArchitecture,
    ) -> bytes:
        """
        Allocate a student model for the given architecture.

        No training happens: the student is filled with small uniform weights in [-0.1, 0.1).
        A real distillation loop has to be supplied by the caller.
        """
        count = student_arch.weight_count()
        weights = [
            self._rng.uniform(-DISTILL_WEIGHT_RANGE, DISTILL_WEIGHT_RANGE)
            for _ in range(count)
        ]
        _LOGGER.info(
            "Created student model with %d weights (teacher has %d, %d bytes)",
            count, teacher_arch.weight_count(), len(teacher_buffer)
        )
        return weights_to_buffer(weights)

    # ==================== STATS ====================

    @staticmethod
    def get_compression_stats(original_size: int, compressed_size: int) -> CompressionStats:
        ratio = original_size / compressed_size if compressed_size else 0.0
        saved = original_size - compressed_size
        percent = saved / original_size * 100.0 if original_size else 0.0
        return CompressionStats(
            original_size=original_size,
            compressed_size=compressed_size,
            compression_ratio=ratio,
            space_saved=saved,
            percent_saved=percent,
        )
