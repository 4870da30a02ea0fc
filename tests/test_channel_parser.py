import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from channel_parser import parse_channels


class TestParseChannels:
    """Test M3U channel list parsing"""

    def test_basic_channel_list(self):
        text = """#EXTM3U
#EXTINF:-1 tvg-id="news.1" tvg-logo="http://img.example.com/news.png" group-title="News",News 24
http://live.example.com/news/index.m3u8
#EXTINF:-1 group-title="Sports",Sports HD
https://live.example.com/sports/index.m3u8
"""
        channels = parse_channels(text)

        assert len(channels) == 2
        assert channels[0].name == "News 24"
        assert channels[0].logo == "http://img.example.com/news.png"
        assert channels[0].group == "News"
        assert channels[0].url == "http://live.example.com/news/index.m3u8"
        assert channels[1].name == "Sports HD"
        assert channels[1].logo == ""
        assert channels[1].group == "Sports"

    def test_attribute_names_case_insensitive(self):
        channels = parse_channels('#EXTINF:-1 TVG-LOGO="l.png" Group-Title="Kids",Cartoons\nhttp://a.example.com/k')
        assert channels[0].logo == "l.png"
        assert channels[0].group == "Kids"

    def test_missing_name_uses_default(self):
        channels = parse_channels("#EXTINF:-1,\nhttp://a.example.com/stream")
        assert channels[0].name == "Unnamed channel"

    def test_extinf_without_comma(self):
        channels = parse_channels("#EXTINF:-1\nhttp://a.example.com/stream")
        assert channels[0].name == "-1"

    def test_comma_inside_name_kept(self):
        channels = parse_channels("#EXTINF:-1,Movies, Classics\nhttp://a.example.com/stream")
        assert channels[0].name == "Movies, Classics"

    def test_other_tags_between_extinf_and_url_skipped(self):
        text = "#EXTINF:-1,Channel\n#EXTVLCOPT:http-user-agent=VLC\n\nhttp://a.example.com/stream\n"
        channels = parse_channels(text)
        assert [c.url for c in channels] == ["http://a.example.com/stream"]

    def test_non_url_line_drops_pending_channel(self):
        text = "#EXTINF:-1,Broken\nnot-a-url\n#EXTINF:-1,Good\nrtmp://a.example.com/live\n"
        channels = parse_channels(text)
        assert [c.name for c in channels] == ["Good"]
        assert channels[0].url == "rtmp://a.example.com/live"

    def test_url_without_extinf_ignored(self):
        assert parse_channels("#EXTM3U\nhttp://a.example.com/orphan\n") == []

    def test_crlf_line_endings(self):
        channels = parse_channels("#EXTM3U\r\n#EXTINF:-1,Channel\r\nhttp://a.example.com/stream\r\n")
        assert channels[0].name == "Channel"
        assert channels[0].url == "http://a.example.com/stream"

    def test_empty_input(self):
        assert parse_channels("") == []
