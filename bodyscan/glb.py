"""Binary glTF 2.0 (GLB) serialization of body meshes."""

from __future__ import annotations

import json
import logging
import struct
from typing import Dict, Tuple

import numpy as np

from bodyscan.mesh import MeshBuffers

logger = logging.getLogger(__name__)

GLB_MAGIC = 0x46546C67
GLB_VERSION = 2
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942
HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8

ARRAY_BUFFER = 34962
ELEMENT_ARRAY_BUFFER = 34963
FLOAT = 5126
UNSIGNED_INT = 5125
TRIANGLES = 4

GENERATOR = "bodyscan"


def _pad(data: bytes, fill: bytes) -> bytes:
    return data + fill * (-len(data) % 4)


def build_gltf(buffers: MeshBuffers) -> Dict:
    """glTF document describing the three binary sections of a mesh."""
    vertex_bytes = buffers.vertices.nbytes
    normal_bytes = buffers.normals.nbytes
    index_bytes = buffers.indices.nbytes
    lo, hi = buffers.bounds()

    return {
        "asset": {"version": "2.0", "generator": GENERATOR},
        "scene": 0,
        "scenes": [{"nodes": [0]}],
        "nodes": [{"mesh": 0, "name": "body"}],
        "meshes": [{
            "name": "body",
            "primitives": [{
                "attributes": {"POSITION": 0, "NORMAL": 1},
                "indices": 2,
                "material": 0,
                "mode": TRIANGLES,
            }],
        }],
        "materials": [{
            "name": "skin",
            "pbrMetallicRoughness": {
                "baseColorFactor": [0.8, 0.8, 0.8, 1.0],
                "metallicFactor": 0.0,
                "roughnessFactor": 0.8,
            },
            "doubleSided": True,
        }],
        "buffers": [{"byteLength": vertex_bytes + normal_bytes + index_bytes}],
        "bufferViews": [
            {"buffer": 0, "byteOffset": 0, "byteLength": vertex_bytes, "target": ARRAY_BUFFER},
            {"buffer": 0, "byteOffset": vertex_bytes, "byteLength": normal_bytes, "target": ARRAY_BUFFER},
            {
                "buffer": 0,
                "byteOffset": vertex_bytes + normal_bytes,
                "byteLength": index_bytes,
                "target": ELEMENT_ARRAY_BUFFER,
            },
        ],
        "accessors": [
            {
                "bufferView": 0,
                "componentType": FLOAT,
                "count": buffers.vertex_count,
                "type": "VEC3",
                "min": [float(v) for v in lo],
                "max": [float(v) for v in hi],
            },
            {"bufferView": 1, "componentType": FLOAT, "count": buffers.vertex_count, "type": "VEC3"},
            {"bufferView": 2, "componentType": UNSIGNED_INT, "count": len(buffers.indices), "type": "SCALAR"},
        ],
    }


def write_glb(buffers: MeshBuffers) -> bytes:
    """Serialize mesh buffers into a GLB file.

    The BIN chunk holds little-endian float32 positions, then float32
    normals, then uint32 triangle indices, without interleaving.

    Args:
        buffers: Mesh to serialize

    Returns:
        Complete GLB file contents, empty bytes for an empty mesh
    """
    if buffers.is_empty:
        logger.warning("Refusing to write an empty mesh")
        return b""
    if not (np.all(np.isfinite(buffers.vertices)) and np.all(np.isfinite(buffers.normals))):
        logger.warning("Refusing to write a mesh with non-finite vertices or normals")
        return b""

    bin_data = (
        buffers.vertices.astype("<f4").tobytes()
        + buffers.normals.astype("<f4").tobytes()
        + buffers.indices.astype("<u4").tobytes()
    )
    bin_chunk = _pad(bin_data, b"\x00")

    gltf = build_gltf(buffers)
    json_chunk = _pad(json.dumps(gltf, separators=(",", ":")).encode("utf-8"), b" ")

    out = bytearray(HEADER_SIZE)
    out += struct.pack("<II", len(json_chunk), CHUNK_JSON) + json_chunk
    out += struct.pack("<II", len(bin_chunk), CHUNK_BIN) + bin_chunk
    struct.pack_into("<III", out, 0, GLB_MAGIC, GLB_VERSION, len(out))

    logger.debug(
        f"GLB: {len(out)} bytes (JSON {len(json_chunk)}, BIN {len(bin_chunk)}) for "
        f"{buffers.vertex_count} vertices"
    )

    return bytes(out)


def read_glb(data: bytes) -> Tuple[Dict, bytes]:
    """Parse a GLB file into its glTF document and binary buffer.

    Args:
        data: GLB file contents

    Returns:
        Tuple of (gltf, bin_data)

    Raises:
        ValueError: If the header, declared lengths or chunk types are invalid
    """
    if len(data) < HEADER_SIZE + CHUNK_HEADER_SIZE:
        raise ValueError(f"GLB data too short: {len(data)} bytes")

    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLB_MAGIC:
        raise ValueError(f"Bad GLB magic 0x{magic:08X}")
    if version != GLB_VERSION:
        raise ValueError(f"Unsupported GLB version {version}")
    if total_length != len(data):
        raise ValueError(f"GLB declares {total_length} bytes but has {len(data)}")

    json_length, json_type = struct.unpack_from("<II", data, HEADER_SIZE)
    if json_type != CHUNK_JSON:
        raise ValueError(f"First GLB chunk must be JSON, got 0x{json_type:08X}")

    json_start = HEADER_SIZE + CHUNK_HEADER_SIZE
    json_end = json_start + json_length
    if json_end > len(data):
        raise ValueError("JSON chunk runs past the end of the GLB data")

    try:
        gltf = json.loads(data[json_start:json_end].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid GLB JSON chunk: {e}") from e

    bin_data = b""
    if json_end + CHUNK_HEADER_SIZE <= len(data):
        bin_length, bin_type = struct.unpack_from("<II", data, json_end)
        if bin_type != CHUNK_BIN:
            raise ValueError(f"Second GLB chunk must be BIN, got 0x{bin_type:08X}")
        bin_start = json_end + CHUNK_HEADER_SIZE
        if bin_start + bin_length > len(data):
            raise ValueError("BIN chunk runs past the end of the GLB data")
        bin_data = data[bin_start:bin_start + bin_length]

    return gltf, bin_data


def read_accessor(gltf: Dict, bin_data: bytes, index: int) -> np.ndarray:
    """Decode a float32 or uint32 accessor from the binary buffer."""
    accessor = gltf["accessors"][index]
    view = gltf["bufferViews"][accessor["bufferView"]]
    dtype = {FLOAT: "<f4", UNSIGNED_INT: "<u4"}[accessor["componentType"]]
    width = {"SCALAR": 1, "VEC3": 3}[accessor["type"]]

    start = view.get("byteOffset", 0) + accessor.get("byteOffset", 0)
    values = np.frombuffer(bin_data, dtype=dtype, count=accessor["count"] * width, offset=start)
    return values.reshape(-1, width) if width > 1 else values


def buffers_from_glb(data: bytes) -> MeshBuffers:
    """Decode a GLB written by ``write_glb`` back into mesh buffers."""
    gltf, bin_data = read_glb(data)
    primitive = gltf["meshes"][0]["primitives"][0]

    return MeshBuffers(
        read_accessor(gltf, bin_data, primitive["attributes"]["POSITION"]),
        read_accessor(gltf, bin_data, primitive["attributes"]["NORMAL"]),
        read_accessor(gltf, bin_data, primitive["indices"]),
    )
