"""
April Reader - A Python library for parsing APRILMDL speech-recognition model files.

This module reads the single-file container that bundles a speech-recognition
model's metadata, its runtime parameter block, the token vocabulary and the
raw bytes of every embedded neural network. Every structural invariant is
checked while reading, and a malformed file is rejected with a typed exception
instead of an out-of-bounds read.
"""

import io
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union


logger = logging.getLogger(__name__)


# ============================================================================
# Format Constants
# ============================================================================

APRIL_MAGIC = b'APRILMDL'
MAX_NETWORKS = 8
LANGUAGE_FIELD_SIZE = 8
PARAM_TAG_SIZE = 8

# Parameter block fields, in file order (all signed 32-bit)
PARAM_FIELDS: Tuple[str, ...] = (
    'batch_size',
    'segment_size',
    'segment_step',
    'mel_features',
    'sample_rate',
    'frame_shift_ms',
    'frame_length_ms',
    'round_pow2',
    'mel_low',
    'mel_high',
    'snip_edges',
    'token_count',
    'blank_id',
)
PARAM_BLOCK_FORMAT = '<' + 'i' * len(PARAM_FIELDS)
PARAM_BLOCK_SIZE = struct.calcsize(PARAM_BLOCK_FORMAT)

MAX_SEGMENT = 100
MAX_MEL_FEATURES = 256
MAX_SAMPLE_RATE = 144000
MAX_TOKEN_COUNT = 16384
MAX_FRAME_LENGTH_MS = 5000

# Network roles of a stateless LSTM transducer, in descriptor order
TRANSDUCER_NETWORKS: Tuple[str, ...] = ('encoder', 'decoder', 'joiner')

# (inputs, outputs) each transducer network is expected to expose to the runtime
TRANSDUCER_NETWORK_IO: Dict[str, Tuple[int, int]] = {
    'encoder': (3, 3),
    'decoder': (1, 1),
    'joiner': (2, 1),
}


# ============================================================================
# Type Enumerations
# ============================================================================

class ModelType(IntEnum):
    """Model architectures a container can declare."""
    UNKNOWN = 0
    LSTM_TRANSDUCER_STATELESS = 1
    MAX = 2

    @classmethod
    def from_code(cls, code: int) -> 'ModelType':
        """Map a raw tag to a known variant; anything unrecognised is UNKNOWN."""
        if code == cls.LSTM_TRANSDUCER_STATELESS:
            return cls.LSTM_TRANSDUCER_STATELESS
        return cls.UNKNOWN


# ============================================================================
# Exception Classes
# ============================================================================

class ModelFileError(Exception):
    """Base exception for all model file errors."""
    pass


class ModelInvalidMagicError(ModelFileError):
    """Raised when the file does not start with the APRILMDL tag."""
    pass


class ModelTruncatedError(ModelFileError):
    """Raised when the file ends before an expected field."""
    pass


class ModelInvalidOffsetError(ModelTruncatedError):
    """Raised when a declared offset or region lies outside the file."""
    pass


class ModelParseError(ModelFileError):
    """Raised when a generic parsing error occurs."""
    pass


class ModelEncodingError(ModelParseError):
    """Raised when bytes expected to hold UTF-8 text are not valid UTF-8."""
    pass


class ModelTooManyNetworksError(ModelParseError):
    """Raised when the declared network count exceeds MAX_NETWORKS."""
    pass


class ModelParameterError(ModelParseError):
    """Raised when a parameter block field violates its bound."""

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[int] = None):
        super().__init__(message)
        self.field = field
        self.value = value


class ModelUnsupportedTypeError(ModelFileError):
    """Raised by callers that cannot run the declared model type."""
    pass


# ============================================================================
# Parameter Validation
# ============================================================================

# (field, predicate over all fields, rule description), checked in this order
PARAM_RULES: Tuple[Tuple[str, Callable[[Dict[str, int]], bool], str], ...] = (
    ('batch_size',
     lambda p: p['batch_size'] == 1,
     'must equal 1'),
    ('segment_size',
     lambda p: 0 < p['segment_size'] < MAX_SEGMENT,
     f'must be greater than 0 and less than {MAX_SEGMENT}'),
    ('segment_step',
     lambda p: 0 < p['segment_step'] < MAX_SEGMENT and p['segment_step'] <= p['segment_size'],
     f'must be greater than 0, less than {MAX_SEGMENT} and no larger than segment_size'),
    ('mel_features',
     lambda p: 0 < p['mel_features'] < MAX_MEL_FEATURES,
     f'must be greater than 0 and less than {MAX_MEL_FEATURES}'),
    ('sample_rate',
     lambda p: 0 < p['sample_rate'] < MAX_SAMPLE_RATE,
     f'must be greater than 0 and less than {MAX_SAMPLE_RATE}'),
    ('token_count',
     lambda p: 0 < p['token_count'] < MAX_TOKEN_COUNT,
     f'must be greater than 0 and less than {MAX_TOKEN_COUNT}'),
    ('blank_id',
     lambda p: 0 <= p['blank_id'] < p['token_count'],
     'must be at least 0 and less than token_count'),
    ('frame_shift_ms',
     lambda p: 0 < p['frame_shift_ms'] <= p['frame_length_ms'],
     'must be greater than 0 and no larger than frame_length_ms'),
    ('frame_length_ms',
     lambda p: 0 < p['frame_length_ms'] <= MAX_FRAME_LENGTH_MS,
     f'must be greater than 0 and at most {MAX_FRAME_LENGTH_MS}'),
    ('mel_low',
     lambda p: 0 < p['mel_low'] < p['sample_rate'],
     'must be greater than 0 and less than sample_rate'),
    ('mel_high',
     lambda p: p['mel_high'] == 0 or p['mel_high'] > p['mel_low'],
     'must be 0 or greater than mel_low'),
)


def validate_params(values: Dict[str, int], source: str = '<stream>') -> None:
    """
    Check raw parameter block values against their documented bounds.

    Rules are evaluated in a fixed order and the first violation is reported.

    Args:
        values: Mapping of every name in PARAM_FIELDS to its raw integer
        source: File name used in the error message

    Raises:
        ModelParameterError: If any field is out of range
    """
    for field, predicate, rule in PARAM_RULES:
        if not predicate(values):
            raise ModelParameterError(
                f"Parameter '{field}' out of range in file '{source}': "
                f"got {values[field]}, {rule}",
                field=field,
                value=values[field],
            )


# ============================================================================
# Parsed Model Structures
# ============================================================================

@dataclass(frozen=True)
class NetworkDescriptor:
    """Byte range of one embedded network inside the container."""
    offset: int
    size: int


@dataclass(frozen=True)
class Params:
    """Validated runtime configuration, vocabulary and network blobs."""
    batch_size: int
    segment_size: int
    segment_step: int
    mel_features: int
    sample_rate: int
    frame_shift_ms: int
    frame_length_ms: int
    round_pow2: bool
    mel_low: int
    mel_high: int
    snip_edges: bool
    blank_id: int
    tokens: Tuple[str, ...]
    networks: Tuple[bytes, ...]

    @property
    def token_count(self) -> int:
        return len(self.tokens)

    @property
    def blank_token(self) -> str:
        return self.tokens[self.blank_id]

    def raw_values(self) -> Dict[str, int]:
        """Return the numeric fields as they are stored in the parameter block."""
        values = {}
        for name in PARAM_FIELDS:
            if name == 'token_count':
                values[name] = self.token_count
            else:
                values[name] = int(getattr(self, name))
        return values


@dataclass(frozen=True)
class ModelFile:
    """A fully parsed APRILMDL container."""
    version: int
    header_size: int
    language: str
    name: str
    description: str
    model_type: ModelType
    model_type_code: int
    params: Params

    @property
    def is_supported(self) -> bool:
        return (
            self.model_type == ModelType.LSTM_TRANSDUCER_STATELESS
            and len(self.params.networks) >= len(TRANSDUCER_NETWORKS)
        )

    def require_supported(self) -> None:
        """
        Reject models the transducer runtime cannot run.

        The parser accepts any model type tag; callers that hand the model to
        the runtime use this check before doing so.

        Raises:
            ModelUnsupportedTypeError: If the type is not a stateless LSTM
                transducer, or fewer than three networks are embedded
        """
        if self.model_type != ModelType.LSTM_TRANSDUCER_STATELESS:
            raise ModelUnsupportedTypeError(
                f"Unsupported model type {self.model_type_code} in model '{self.name}': "
                f"only {int(ModelType.LSTM_TRANSDUCER_STATELESS)} "
                f"({ModelType.LSTM_TRANSDUCER_STATELESS.name}) is supported"
            )
        if len(self.params.networks) < len(TRANSDUCER_NETWORKS):
            raise ModelUnsupportedTypeError(
                f"Model '{self.name}' embeds {len(self.params.networks)} networks, "
                f"a transducer needs {len(TRANSDUCER_NETWORKS)} "
                f"({', '.join(TRANSDUCER_NETWORKS)})"
            )

    def network(self, role: str) -> bytes:
        """Return the blob for a transducer role ('encoder', 'decoder' or 'joiner')."""
        if role not in TRANSDUCER_NETWORKS:
            raise KeyError(f"Unknown network role '{role}'")
        index = TRANSDUCER_NETWORKS.index(role)
        if index >= len(self.params.networks):
            raise KeyError(f"Network '{role}' not present in model '{self.name}'")
        return self.params.networks[index]


# ============================================================================
# AprilModelReader Class
# ============================================================================

class AprilModelReader:
    """
    Reader for APRILMDL model container files.

    The whole container is parsed and validated when the context is entered;
    the accessors then return values from the immutable ModelFile.

    Usage:
        with AprilModelReader('model.april') as reader:
            params = reader.get_params()
            tokens = reader.get_tokens()
            encoder = reader.get_network_data('encoder')
    """

    def __init__(self, filepath: str):
        """
        Initialize the reader with a file path.

        Args:
            filepath: Path to the model file to read
        """
        self.filepath = filepath
        self.file = None
        self.header: Dict[str, Any] = {}
        self.param_metadata: Dict[str, int] = {}
        self.network_descriptors: List[NetworkDescriptor] = []
        self.model: Optional[ModelFile] = None

    def __enter__(self):
        """
        Context manager entry - opens and parses the file.

        Returns:
            self for use in with statement

        Raises:
            ModelFileError: If the file doesn't exist or any part of it is invalid
        """
        try:
            self.file = open(self.filepath, 'rb')
            self._parse()
            return self

        except FileNotFoundError as e:
            raise ModelFileError(f"File not found: '{self.filepath}'") from e
        except Exception:
            if self.file is not None:
                self.file.close()
                self.file = None
            raise

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes the file without suppressing exceptions."""
        if self.file is not None:
            self.file.close()
            self.file = None
        return None

    # ========================================================================
    # Accessors
    # ========================================================================

    def get_model(self) -> ModelFile:
        """
        Return the parsed model.

        Raises:
            ModelParseError: If no model has been parsed yet
        """
        if self.model is None:
            raise ModelParseError(f"Model file '{self.filepath}' has not been parsed")
        return self.model

    def get_version(self) -> int:
        return self.get_model().version

    def get_language(self) -> str:
        return self.get_model().language

    def get_params(self) -> Params:
        return self.get_model().params

    def get_tokens(self) -> List[str]:
        return list(self.get_model().params.tokens)

    def get_network_count(self) -> int:
        return len(self.get_model().params.networks)

    def get_network_data(self, key: Union[int, str]) -> bytes:
        """
        Return the raw bytes of an embedded network.

        Args:
            key: Positional index, or a transducer role name

        Returns:
            The network blob exactly as stored in the file

        Raises:
            KeyError: If there is no network for the key
        """
        model = self.get_model()
        if isinstance(key, str):
            return model.network(key)
        if not 0 <= key < len(model.params.networks):
            raise KeyError(f"Network {key} not found")
        return model.params.networks[key]

    # ========================================================================
    # Primitive Readers
    # ========================================================================

    def _require_open(self) -> None:
        if self.file is None:
            raise ModelParseError("File is not open")

    def _source_size(self) -> int:
        position = self.file.tell()
        size = self.file.seek(0, io.SEEK_END)
        self.file.seek(position)
        return size

    def _read_fixed(self, size: int, what: str) -> bytes:
        """
        Read exactly `size` bytes.

        The request is checked against the bytes left in the file before any
        read happens, so a corrupt length never turns into a huge allocation.

        Args:
            size: Number of bytes to read
            what: Field name used in error messages

        Returns:
            The bytes read

        Raises:
            ModelParseError: If no file is open
            ModelTruncatedError: If fewer than `size` bytes remain
        """
        self._require_open()

        position = self.file.tell()
        available = max(self._source_size() - position, 0)
        if size > available:
            raise ModelTruncatedError(
                f"Unexpected end of file '{self.filepath}' at position {position}: "
                f"expected to read {size} bytes for {what}, only {available} bytes available"
            )

        data = self.file.read(size)
        if len(data) < size:
            raise ModelTruncatedError(
                f"Unexpected end of file '{self.filepath}' at position {position}: "
                f"expected to read {size} bytes for {what}, only {len(data)} bytes available"
            )
        return data

    def _read_u32(self, what: str) -> int:
        return struct.unpack('<I', self._read_fixed(4, what))[0]

    def _read_u64(self, what: str) -> int:
        return struct.unpack('<Q', self._read_fixed(8, what))[0]

    def _read_i32(self, what: str) -> int:
        return struct.unpack('<i', self._read_fixed(4, what))[0]

    def _decode_utf8(self, data: bytes, what: str, position: int) -> str:
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ModelEncodingError(
                f"Invalid UTF-8 {what} in file '{self.filepath}' at position {position}: {e}"
            ) from e

    def _read_string(self, what: str) -> str:
        """
        Read a length-prefixed UTF-8 string.

        Strings are encoded as:
        - uint64: length of the string in bytes
        - bytes: UTF-8 encoded string data

        Raises:
            ModelTruncatedError: If the file ends before the string is fully read
            ModelEncodingError: If the data is not valid UTF-8
        """
        self._require_open()
        position = self.file.tell()

        length = self._read_u64(f"{what} length")
        data = self._read_fixed(length, f"{what} data")
        return self._decode_utf8(data, what, position)

    def _read_token(self, index: int) -> str:
        """
        Read one vocabulary token: int32 byte length, then UTF-8 bytes.

        Trailing NUL padding is stripped from the decoded token.
        """
        self._require_open()
        position = self.file.tell()

        length = self._read_i32(f"token {index} length")
        if length < 0:
            raise ModelParseError(
                f"Invalid length for token {index} in file '{self.filepath}' "
                f"at position {position}: {length} is negative"
            )

        data = self._read_fixed(length, f"token {index} data")
        return self._decode_utf8(data, f"token {index}", position).rstrip('\x00')

    def _seek_to(self, offset: int, what: str) -> None:
        """
        Move to an absolute offset that must lie within the file.

        Raises:
            ModelInvalidOffsetError: If the offset is past the end of the file
        """
        self._require_open()

        size = self._source_size()
        if offset > size:
            raise ModelInvalidOffsetError(
                f"Invalid offset for {what} in file '{self.filepath}': "
                f"offset {offset} is beyond the end of the file ({size} bytes)"
            )
        self.file.seek(offset)

    def _check_region(self, offset: int, size: int, what: str) -> None:
        file_size = self._source_size()
        if offset + size > file_size:
            raise ModelInvalidOffsetError(
                f"Invalid region for {what} in file '{self.filepath}': "
                f"offset {offset} + size {size} exceeds file size {file_size}"
            )

    # ========================================================================
    # Internal Parsing Methods
    # ========================================================================

    def _read_header(self) -> None:
        """
        Read and validate the container header.

        The header consists of:
        - 8 bytes: magic tag, the ASCII bytes "APRILMDL"
        - 4 bytes: version (uint32)
        - 8 bytes: header_size (uint64)

        The version is recorded but not gated. header_size must not point
        past the end of the file.

        Raises:
            ModelInvalidMagicError: If the magic tag doesn't match
            ModelTruncatedError: If the file ends before the header is fully read
            ModelInvalidOffsetError: If header_size exceeds the file size
        """
        self._require_open()
        position = self.file.tell()

        magic = self._read_fixed(len(APRIL_MAGIC), 'magic')
        if magic != APRIL_MAGIC:
            raise ModelInvalidMagicError(
                f"Invalid APRILMDL magic in file '{self.filepath}' at position {position}: "
                f"expected {APRIL_MAGIC!r}, got {magic!r}"
            )

        version = self._read_u32('version')
        header_size = self._read_u64('header_size')
        self._check_region(0, header_size, 'header')

        self.header = {
            'magic': magic,
            'version': version,
            'header_size': header_size,
        }

    def _read_language(self) -> str:
        self._require_open()
        position = self.file.tell()
        raw = self._read_fixed(LANGUAGE_FIELD_SIZE, 'language tag')
        return self._decode_utf8(raw, 'language tag', position).rstrip('\x00')

    def _read_metadata(self) -> Tuple[str, str]:
        """Read the model name and description, in that order."""
        name = self._read_string('name')
        description = self._read_string('description')
        return name, description

    def _read_model_type(self) -> int:
        # Range and support checks belong to the caller, see ModelFile.require_supported
        return self._read_u32('model type')

    def _read_param_metadata(self) -> None:
        """
        Read the parameter block descriptor.

        The descriptor consists of three uint64 values: the offset and size
        of the parameter block, and the number of embedded networks.

        Raises:
            ModelTooManyNetworksError: If more than MAX_NETWORKS are declared
            ModelParseError: If no network is declared
            ModelInvalidOffsetError: If the parameter block lies outside the file
        """
        offset = self._read_u64('parameter offset')
        size = self._read_u64('parameter size')
        num_networks = self._read_u64('network count')

        if num_networks > MAX_NETWORKS:
            raise ModelTooManyNetworksError(
                f"Too many networks in file '{self.filepath}': "
                f"{num_networks} declared, at most {MAX_NETWORKS} allowed"
            )
        if num_networks == 0:
            raise ModelParseError(
                f"No networks declared in file '{self.filepath}': at least 1 is required"
            )
        self._check_region(offset, size, 'parameter block')

        self.param_metadata = {
            'offset': offset,
            'size': size,
            'num_networks': num_networks,
        }

    def _read_network_descriptors(self) -> None:
        """
        Read one (offset, size) pair per declared network.

        Descriptors directly follow the parameter descriptor and must be read
        before seeking to the parameter block. Their order is the network order;
        it need not follow the order of the blobs in the file.
        """
        num_networks = self.param_metadata.get('num_networks', 0)

        self.network_descriptors = []
        for index in range(num_networks):
            offset = self._read_u64(f"network {index} offset")
            size = self._read_u64(f"network {index} size")
            self._check_region(offset, size, f"network {index}")
            self.network_descriptors.append(NetworkDescriptor(offset, size))

        logger.debug(
            "Read %d network descriptors from '%s'", len(self.network_descriptors), self.filepath
        )

    def _read_params(self) -> Dict[str, int]:
        """
        Seek to the parameter block, read its fixed fields and validate them.

        The block starts with an 8-byte reserved tag which is skipped, followed
        by the signed 32-bit fields listed in PARAM_FIELDS.

        Returns:
            Mapping of field name to raw value

        Raises:
            ModelTruncatedError: If the block is cut short
            ModelParameterError: At the first field that violates its bound
        """
        self._seek_to(self.param_metadata.get('offset', 0), 'parameter block')

        self._read_fixed(PARAM_TAG_SIZE, 'parameter block tag')
        data = self._read_fixed(PARAM_BLOCK_SIZE, 'parameter block fields')
        values = dict(zip(PARAM_FIELDS, struct.unpack(PARAM_BLOCK_FORMAT, data)))

        validate_params(values, self.filepath)
        return values

    def _read_vocabulary(self, token_count: int) -> List[str]:
        # Tokens directly follow the parameter fields; a token's position is its id
        return [self._read_token(index) for index in range(token_count)]

    def _read_networks(self) -> List[bytes]:
        """Fetch every network blob by its own descriptor, in descriptor order."""
        networks = []
        for index, descriptor in enumerate(self.network_descriptors):
            self._seek_to(descriptor.offset, f"network {index}")
            networks.append(self._read_fixed(descriptor.size, f"network {index} data"))
            logger.debug(
                "Extracted network %d (%d bytes at offset %d) from '%s'",
                index, descriptor.size, descriptor.offset, self.filepath,
            )
        return networks

    def _parse(self) -> ModelFile:
        """
        Parse the whole container from the open file.

        Returns:
            The parsed ModelFile, also stored in self.model
        """
        self._require_open()

        self._read_header()
        language = self._read_language()
        name, description = self._read_metadata()
        model_type_code = self._read_model_type()
        logger.debug(
            "Decoded header of '%s': version %d, language '%s', model type %d",
            self.filepath, self.header['version'], language, model_type_code,
        )

        self._read_param_metadata()
        self._read_network_descriptors()

        values = self._read_params()
        tokens = self._read_vocabulary(values['token_count'])
        networks = self._read_networks()

        params = Params(
            batch_size=values['batch_size'],
            segment_size=values['segment_size'],
            segment_step=values['segment_step'],
            mel_features=values['mel_features'],
            sample_rate=values['sample_rate'],
            frame_shift_ms=values['frame_shift_ms'],
            frame_length_ms=values['frame_length_ms'],
            round_pow2=values['round_pow2'] != 0,
            mel_low=values['mel_low'],
            mel_high=values['mel_high'],
            snip_edges=values['snip_edges'] != 0,
            blank_id=values['blank_id'],
            tokens=tuple(tokens),
            networks=tuple(networks),
        )

        self.model = ModelFile(
            version=self.header['version'],
            header_size=self.header['header_size'],
            language=language,
            name=name,
            description=description,
            model_type=ModelType.from_code(model_type_code),
            model_type_code=model_type_code,
            params=params,
        )
        return self.model


# ============================================================================
# Module-level Helpers
# ============================================================================

def parse_model(stream, name: str = '<stream>') -> ModelFile:
    """
    Parse a model from an already open, seekable binary stream.

    The stream stays open; closing it is the caller's responsibility.

    Args:
        stream: Binary file object supporting read, seek and tell
        name: Name used in error messages

    Returns:
        The parsed ModelFile
    """
    reader = AprilModelReader(name)
    reader.file = stream
    try:
        return reader._parse()
    finally:
        reader.file = None


def load_model(filepath: str) -> ModelFile:
    """Open, parse and close a model file."""
    with AprilModelReader(filepath) as reader:
        return reader.get_model()
