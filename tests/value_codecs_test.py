import pickle

import pytest
import zstandard as zstd

from yamemcache.base.base_value_codec import EncodedValue
from yamemcache.value_codecs import BytesCodec, MixedCodec, ZstdCodec


@pytest.fixture
def default_dictionary() -> zstd.ZstdCompressionDict:
    return zstd.train_dictionary(100 * 1024, [b"default", b"test", b"dictionary"] * 100)


@pytest.fixture
def old_dictionary() -> zstd.ZstdCompressionDict:
    return zstd.train_dictionary(100 * 1024, [b"old", b"test", b"dictionary"] * 100)


def get_data_compression_dict(data: bytes) -> int:
    return zstd.get_frame_parameters(data, format=zstd.FORMAT_ZSTD1_MAGICLESS).dict_id


def test_bytes_codec() -> None:
    codec = BytesCodec()
    encoded = codec.encode(b"\x00raw\r\n")
    assert encoded == EncodedValue(data=b"\x00raw\r\n", flags=0)
    # Flags are ignored
    assert codec.decode(b"\x00raw\r\n", 1234) == b"\x00raw\r\n"
    assert codec.decode(memoryview(b"abc"), 0) == b"abc"
    with pytest.raises(TypeError):
        codec.encode("not bytes")  # type: ignore[arg-type]


@pytest.mark.parametrize("codec_class", [ZstdCodec, MixedCodec])
def test_encode_bytes(codec_class):
    codec = codec_class()
    data = b"test data"
    encoded_value = codec.encode(data)
    assert isinstance(encoded_value, EncodedValue)
    assert encoded_value.flags == codec.BINARY
    assert encoded_value.data == data
    assert codec.decode(encoded_value.data, encoded_value.flags) == data


@pytest.mark.parametrize("codec_class", [ZstdCodec, MixedCodec])
def test_encode_int(codec_class):
    codec = codec_class()
    encoded_value = codec.encode(123)
    assert encoded_value.flags == codec.INT
    assert encoded_value.data == b"123"
    assert codec.decode(encoded_value.data, encoded_value.flags) == 123
    # Values written as LONG by other clients
    assert codec.decode(b"-5", codec.LONG) == -5


@pytest.mark.parametrize("codec_class", [ZstdCodec, MixedCodec])
def test_encode_string(codec_class):
    codec = codec_class()
    data = "tést"
    encoded_value = codec.encode(data)
    assert encoded_value.flags == codec.STR
    assert encoded_value.data == data.encode()
    assert codec.decode(encoded_value.data, encoded_value.flags) == data


@pytest.mark.parametrize("codec_class", [ZstdCodec, MixedCodec])
def test_encode_complex(codec_class):
    codec = codec_class()
    data = [1, 2, 3]
    encoded_value = codec.encode(data)
    assert encoded_value.flags == codec.PICKLE
    assert pickle.loads(encoded_value.data) == data  # noqa: S301
    assert codec.decode(encoded_value.data, encoded_value.flags) == data


@pytest.mark.parametrize("codec_class", [ZstdCodec, MixedCodec])
def test_bool_is_pickled(codec_class):
    codec = codec_class()
    encoded_value = codec.encode(True)
    assert encoded_value.flags == codec.PICKLE
    assert codec.decode(encoded_value.data, encoded_value.flags) is True


@pytest.mark.parametrize("codec_class", [ZstdCodec, MixedCodec])
def test_encode_compress(codec_class):
    codec = codec_class()
    data = ["test"] * 100
    encoded_value = codec.encode(data)
    if codec_class == MixedCodec:
        assert encoded_value.flags == codec.PICKLE | codec.ZLIB_COMPRESSED
    else:
        assert encoded_value.flags == codec.PICKLE | codec.ZSTD_COMPRESSED
    assert len(encoded_value.data) < 100
    assert codec.decode(encoded_value.data, encoded_value.flags) == data


def test_compression_threshold() -> None:
    codec = MixedCodec(compression_threshold=1024)
    encoded_value = codec.encode(b"x" * 1000)
    assert encoded_value.flags == MixedCodec.BINARY
    encoded_value = codec.encode(b"x" * 1025)
    assert encoded_value.flags == MixedCodec.BINARY | MixedCodec.ZLIB_COMPRESSED


def test_zstd_codec_understands_zlib() -> None:
    data = b"compressed with zlib" * 100
    encoded_value = MixedCodec().encode(data)
    assert encoded_value.flags == MixedCodec.BINARY | MixedCodec.ZLIB_COMPRESSED
    assert ZstdCodec().decode(encoded_value.data, encoded_value.flags) == data


def test_zstd_writes_magicless_frames() -> None:
    encoded_value = ZstdCodec().encode(b"some data " * 100)
    assert not encoded_value.data.startswith(ZstdCodec.ZSTD_MAGIC)
    assert get_data_compression_dict(encoded_value.data) == 0


def test_zstd_dictionary(default_dictionary, old_dictionary) -> None:
    data = b"default test dictionary " * 20

    old_codec = ZstdCodec(dictionary=old_dictionary.as_bytes())
    old_value = old_codec.encode(data)
    assert get_data_compression_dict(old_value.data) == old_dictionary.dict_id()

    codec = ZstdCodec(
        dictionary=default_dictionary.as_bytes(),
        extra_dictionaries=[old_dictionary.as_bytes()],
    )
    encoded_value = codec.encode(data)
    assert (
        get_data_compression_dict(encoded_value.data) == default_dictionary.dict_id()
    )
    assert codec.decode(encoded_value.data, encoded_value.flags) == data
    # Values compressed with a previous dictionary are still readable
    assert codec.decode(old_value.data, old_value.flags) == data


def test_zstd_unknown_dictionary(default_dictionary) -> None:
    encoded_value = ZstdCodec(dictionary=default_dictionary.as_bytes()).encode(
        b"default test dictionary " * 20
    )
    with pytest.raises(ValueError):
        ZstdCodec().decode(encoded_value.data, encoded_value.flags)
