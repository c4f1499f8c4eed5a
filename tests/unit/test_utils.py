"""Tests for utils.py - parsing and formatting helpers"""

import pytest

from qbt_automate.utils import (
    chunked, extract_domain, format_bytes, format_duration, normalize_name,
    normalize_path, parse_duration, parse_size, parse_tags,
)


class TestParseTags:
    """Test qBittorrent tag string parsing"""

    def test_comma_separated_string(self):
        assert parse_tags("hd, new ,  seeded") == ['hd', 'new', 'seeded']

    def test_empty_values(self):
        assert parse_tags('') == []
        assert parse_tags(None) == []

    def test_iterable_drops_blank_entries(self):
        assert parse_tags(['a', ' ', '', ' b ']) == ['a', 'b']


class TestParseDuration:
    """Test human-readable duration parsing"""

    @pytest.mark.parametrize('text,expected', [
        ('30 days', 30 * 86400),
        ('12h', 43200),
        ('5 minutes', 300),
        ('2w', 2 * 604800),
        ('90', 90),
        (300, 300),
        ('1.5h', 5400),
    ])
    def test_valid(self, text, expected):
        assert parse_duration(text) == expected

    @pytest.mark.parametrize('text', ['soon', '10 fortnights', '', True])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)


class TestParseSize:
    """Test human-readable size parsing"""

    def test_decimal_and_binary_units(self):
        assert parse_size('500 GB') == 500 * 1000 ** 3
        assert parse_size('1.5TiB') == int(1.5 * 1024 ** 4)
        assert parse_size('100gib') == 100 * 1024 ** 3

    def test_plain_numbers_are_bytes(self):
        assert parse_size(2048) == 2048
        assert parse_size('2048') == 2048

    def test_unknown_unit(self):
        with pytest.raises(ValueError):
            parse_size('10 parsecs')


class TestFormatting:
    """Test byte and duration formatting"""

    def test_format_bytes(self):
        assert format_bytes(512) == '512.00 B'
        assert format_bytes(1536) == '1.50 KB'
        assert format_bytes(1024 ** 3) == '1.00 GB'

    def test_format_duration(self):
        assert format_duration(45) == '45s'
        assert format_duration(90061) == '1d 1h 1m'
        assert format_duration(3600) == '1h'


class TestNormalization:
    """Test path and name normalization"""

    def test_normalize_path(self):
        assert normalize_path('D:\\Data\\Movies\\') == 'd:/data/movies'
        assert normalize_path('/data/Movie/') == '/data/movie'
        assert normalize_path('') == ''

    def test_normalize_name(self):
        assert normalize_name('Movie.Title_2020-GRP') == 'movie title 2020 grp'
        assert normalize_name('  A   B ') == 'a b'


class TestExtractDomain:
    """Test tracker host extraction"""

    @pytest.mark.parametrize('url,expected', [
        ('https://tracker.example.org:443/announce', 'tracker.example.org'),
        ('udp://Open.Tracker.NET:1337', 'open.tracker.net'),
        ('tracker.example.org/announce', 'tracker.example.org'),
        ('', ''),
    ])
    def test_extract(self, url, expected):
        assert extract_domain(url) == expected


class TestChunked:
    """Test batching of hash lists"""

    def test_splits_preserving_order(self):
        assert list(chunked(['a', 'b', 'c', 'd', 'e'], 2)) == [['a', 'b'], ['c', 'd'], ['e']]

    def test_small_input_is_one_chunk(self):
        assert list(chunked(['a', 'b'], 50)) == [['a', 'b']]

    def test_empty_input_yields_nothing(self):
        assert list(chunked([], 10)) == []

    def test_non_positive_size_means_one_chunk(self):
        assert list(chunked(['a', 'b', 'c'], 0)) == [['a', 'b', 'c']]
