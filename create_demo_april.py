#!/usr/bin/env python3
"""
Encode APRILMDL model containers and create a demo file.

encode_model_file() lays out a container exactly as april_reader expects to
read it. Most layout fields can be overridden so that tests can build
deliberately malformed files.
"""

import struct
from typing import Dict, Optional, Sequence, Tuple

from april_reader import (
    APRIL_MAGIC,
    LANGUAGE_FIELD_SIZE,
    PARAM_BLOCK_FORMAT,
    PARAM_FIELDS,
    ModelFile,
    ModelType,
)


DEFAULT_PARAM_TAG = b'APRILPRM'

DEMO_PARAMS: Dict[str, int] = {
    'batch_size': 1,
    'segment_size': 9,
    'segment_step': 4,
    'mel_features': 80,
    'sample_rate': 16000,
    'frame_shift_ms': 10,
    'frame_length_ms': 25,
    'round_pow2': 1,
    'mel_low': 20,
    'mel_high': 0,
    'snip_edges': 0,
    'blank_id': 0,
}

DEMO_TOKENS = ['<blk>', '<sos/eos>', '<unk>', '▁THE', '▁A', 'S', '▁AND', 'ED', '▁OF', '▁TO']


def _encode_string(value: str) -> bytes:
    data = value.encode('utf-8')
    return struct.pack('<Q', len(data)) + data


def _encode_token(value: str) -> bytes:
    data = value.encode('utf-8')
    return struct.pack('<i', len(data)) + data


def encode_model_file(
    params: Dict[str, int],
    tokens: Sequence[str],
    networks: Sequence[bytes],
    version: int = 1,
    language: str = 'en',
    name: str = '',
    description: str = '',
    model_type: int = ModelType.LSTM_TRANSDUCER_STATELESS,
    header_size: Optional[int] = None,
    num_networks: Optional[int] = None,
    descriptors: Optional[Sequence[Tuple[int, int]]] = None,
    param_offset: Optional[int] = None,
    param_tag: bytes = DEFAULT_PARAM_TAG,
) -> bytes:
    """
    Build the bytes of a model container.

    The parameter block follows the network descriptors directly, and the
    network blobs follow the vocabulary in order. `token_count` defaults to
    len(tokens) when it is missing from `params`.

    Args:
        params: Parameter block values keyed by field name
        tokens: Vocabulary, in id order
        networks: Network blobs, in descriptor order
        version: Container format version
        language: Language code, at most 8 UTF-8 bytes
        name: Model name
        description: Model description
        model_type: Raw model type tag
        header_size: Declared header size (default: bytes before the parameter block)
        num_networks: Declared network count (default: number of descriptors)
        descriptors: (offset, size) pairs written instead of the computed ones
        param_offset: Declared parameter block offset (default: its real offset)
        param_tag: 8-byte reserved tag at the start of the parameter block

    Returns:
        The encoded container
    """
    language_bytes = language.encode('utf-8')
    if len(language_bytes) > LANGUAGE_FIELD_SIZE:
        raise ValueError(
            f"Language '{language}' is longer than {LANGUAGE_FIELD_SIZE} bytes"
        )
    if len(param_tag) != 8:
        raise ValueError("Parameter block tag must be exactly 8 bytes")

    descriptor_count = len(descriptors) if descriptors is not None else len(networks)

    # Metadata section, everything up to the network descriptors
    metadata = bytearray()
    metadata += language_bytes.ljust(LANGUAGE_FIELD_SIZE, b'\x00')
    metadata += _encode_string(name)
    metadata += _encode_string(description)
    metadata += struct.pack('<I', int(model_type))

    header_length = len(APRIL_MAGIC) + 4 + 8
    prefix_length = header_length + len(metadata) + 3 * 8 + 16 * descriptor_count

    # Parameter block: reserved tag, fixed fields, vocabulary
    values = dict(params)
    values.setdefault('token_count', len(tokens))
    param_block = bytearray(param_tag)
    param_block += struct.pack(PARAM_BLOCK_FORMAT, *(int(values[field]) for field in PARAM_FIELDS))
    for token in tokens:
        param_block += _encode_token(token)

    if descriptors is None:
        descriptors = []
        current_offset = prefix_length + len(param_block)
        for blob in networks:
            descriptors.append((current_offset, len(blob)))
            current_offset += len(blob)

    file_content = bytearray()

    # Header: magic, version, header_size
    file_content += APRIL_MAGIC
    file_content += struct.pack('<I', version)
    file_content += struct.pack('<Q', prefix_length if header_size is None else header_size)

    file_content += metadata

    # Parameter descriptor: offset, size, num_networks
    file_content += struct.pack('<Q', prefix_length if param_offset is None else param_offset)
    file_content += struct.pack('<Q', len(param_block))
    file_content += struct.pack('<Q', descriptor_count if num_networks is None else num_networks)

    # Network descriptors
    for offset, size in descriptors:
        file_content += struct.pack('<QQ', offset, size)

    file_content += param_block

    for blob in networks:
        file_content += blob

    return bytes(file_content)


def encode_model(model: ModelFile) -> bytes:
    """Encode a parsed ModelFile back into container bytes."""
    params = model.params
    return encode_model_file(
        params.raw_values(),
        params.tokens,
        params.networks,
        version=model.version,
        language=model.language,
        name=model.name,
        description=model.description,
        model_type=model.model_type_code,
        header_size=model.header_size,
    )


def create_demo_april_file(filepath: str):
    """
    Create a demo model file with a small vocabulary and three placeholder networks.

    Args:
        filepath: Path where the model file should be created
    """
    networks = [
        b'encoder-network' + bytes(range(64)),
        b'decoder-network' + bytes(range(32)),
        b'joiner-network' + bytes(range(16)),
    ]

    file_content = encode_model_file(
        DEMO_PARAMS,
        DEMO_TOKENS,
        networks,
        version=1,
        language='en',
        name='Demo Model v1.0',
        description='Stateless LSTM transducer with placeholder networks',
    )

    with open(filepath, 'wb') as f:
        f.write(file_content)

    print(f"Created demo model file: {filepath}")
    print(f"  File size: {len(file_content):,} bytes")
    print(f"  Tokens: {len(DEMO_TOKENS)}")
    print(f"  Networks: {len(networks)}")


if __name__ == '__main__':
    create_demo_april_file('demo_model.april')
