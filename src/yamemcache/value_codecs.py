import pickle  # noqa: S403
import zlib
from typing import Any, Dict, List, Optional, Tuple

import zstandard as zstd

from yamemcache.base.base_value_codec import BaseValueCodec, EncodedValue
from yamemcache.protocol import Blob


class BytesCodec(BaseValueCodec[bytes]):
    """
    Raw bytes in, raw bytes out. Flags are always stored as 0 and
    ignored on decode.
    """

    def encode(self, value: bytes) -> EncodedValue:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"BytesCodec can only store bytes, got {type(value)}")
        return EncodedValue(data=bytes(value), flags=0)

    def decode(self, data: Blob, flags: int) -> bytes:
        return bytes(data)


class MixedCodec(BaseValueCodec[Any]):
    """
    Stores str, int and bytes natively and pickles anything else,
    recording the encoding in the flags. Values bigger than the
    compression threshold are zlib compressed.
    """

    STR = 0
    PICKLE = 1
    INT = 2
    LONG = 4
    ZLIB_COMPRESSED = 8
    BINARY = 16

    COMPRESSION_THRESHOLD = 128

    def __init__(
        self,
        pickle_protocol: int = 0,
        compression_threshold: int = COMPRESSION_THRESHOLD,
    ) -> None:
        self._pickle_protocol = pickle_protocol
        self._compression_threshold = compression_threshold

    def _encode_type(self, value: Any) -> Tuple[bytes, int]:
        if isinstance(value, bytes):
            return value, self.BINARY
        elif isinstance(value, int) and not isinstance(value, bool):
            return str(value).encode("ascii"), self.INT
        elif isinstance(value, str):
            return value.encode(), self.STR
        else:
            return pickle.dumps(value, protocol=self._pickle_protocol), self.PICKLE

    def _decode_type(self, data: Blob, flags: int) -> Any:
        if flags == self.STR:
            return bytes(data).decode()
        elif flags in (self.INT, self.LONG):
            return int(bytes(data))
        elif flags == self.BINARY:
            return bytes(data)
        else:
            return pickle.loads(data)  # noqa: S301

    def _compress(self, data: bytes) -> Tuple[bytes, int]:
        return zlib.compress(data), self.ZLIB_COMPRESSED

    def encode(self, value: Any) -> EncodedValue:
        data, flags = self._encode_type(value)
        if len(data) > self._compression_threshold:
            data, compression_flag = self._compress(data)
            flags |= compression_flag
        return EncodedValue(data=data, flags=flags)

    def decode(self, data: Blob, flags: int) -> Any:
        if flags & self.ZLIB_COMPRESSED:
            data = zlib.decompress(data)
            flags ^= self.ZLIB_COMPRESSED
        return self._decode_type(data, flags)


class ZstdCodec(MixedCodec):
    """
    MixedCodec flavour compressing with zstd, optionally using a
    trained dictionary.

    Frames are written without the zstd magic number (we know they
    are zstd from the flags) and with the dictionary id, so values
    written with older dictionaries can be read as long as those are
    passed in `extra_dictionaries`. zlib compressed values written by
    MixedCodec are still readable.
    """

    ZSTD_COMPRESSED = 32

    ZSTD_MAGIC = b"(\xb5/\xfd"
    DEFAULT_PICKLE_PROTOCOL = 5
    DEFAULT_COMPRESSION_LEVEL = 9

    _zstd_compressor: zstd.ZstdCompressor
    _zstd_decompressors: Dict[int, zstd.ZstdDecompressor]

    def __init__(
        self,
        pickle_protocol: int = DEFAULT_PICKLE_PROTOCOL,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        compression_threshold: int = MixedCodec.COMPRESSION_THRESHOLD,
        dictionary: Optional[bytes] = None,
        extra_dictionaries: Optional[List[bytes]] = None,
    ) -> None:
        super().__init__(
            pickle_protocol=pickle_protocol,
            compression_threshold=compression_threshold,
        )
        self._compression_level = compression_level
        self._zstd_decompressors = {0: zstd.ZstdDecompressor()}
        for extra_dictionary in extra_dictionaries or []:
            self._add_dictionary(extra_dictionary)

        compression_params = zstd.ZstdCompressionParameters.from_level(
            compression_level,
            format=zstd.FORMAT_ZSTD1_MAGICLESS,
            write_content_size=True,
            write_checksum=False,
            write_dict_id=True,
        )
        if dictionary:
            self._zstd_compressor = zstd.ZstdCompressor(
                dict_data=self._add_dictionary(dictionary),
                compression_params=compression_params,
            )
        else:
            self._zstd_compressor = zstd.ZstdCompressor(
                compression_params=compression_params
            )

    def _add_dictionary(self, dictionary: bytes) -> zstd.ZstdCompressionDict:
        zstd_dict = zstd.ZstdCompressionDict(dictionary)
        self._zstd_decompressors[zstd_dict.dict_id()] = zstd.ZstdDecompressor(
            dict_data=zstd_dict
        )
        return zstd_dict

    def _compress(self, data: bytes) -> Tuple[bytes, int]:
        return self._zstd_compressor.compress(data), self.ZSTD_COMPRESSED

    def _zstd_decompress(self, data: Blob) -> bytes:
        frame = self.ZSTD_MAGIC + bytes(data)
        dict_id = zstd.get_frame_parameters(frame).dict_id
        if decompressor := self._zstd_decompressors.get(dict_id):
            return decompressor.decompress(frame)
        raise ValueError(f"Unknown dictionary id: {dict_id}")

    def decode(self, data: Blob, flags: int) -> Any:
        if flags & self.ZSTD_COMPRESSED:
            return self._decode_type(
                self._zstd_decompress(data), flags ^ self.ZSTD_COMPRESSED
            )
        return super().decode(data, flags)
