from zenbot_core.streaming.decoder import END_OF_STREAM, ChunkDecoder


def test_decoder_reassembles_frames_split_across_reads():
    dec = ChunkDecoder()
    reads = ['data: {"c": "resp', 'onse", "d": "A"}\n\ndata: {"d"', ': "B"}\n']
    frames = list(dec.frames(reads))
    assert frames == [{"c": "response", "d": "A"}, {"d": "B"}]


def test_decoder_skips_malformed_frame_and_continues():
    dec = ChunkDecoder()
    reads = ['{"c":"response","d":"A"}\n', "not-json\n", '{"c":"response","d":"B"}\n']
    frames = list(dec.frames(reads))
    assert [f["d"] for f in frames] == ["A", "B"]
    assert dec.skipped == 1


def test_decoder_handles_utf8_split_inside_character():
    dec = ChunkDecoder()
    raw = 'data: {"d": "你好"}\n'.encode("utf-8")
    # 在“你”的多字节编码中间切开
    cut = raw.index("你".encode("utf-8")) + 1
    frames = list(dec.frames([raw[:cut], raw[cut:]]))
    assert frames == [{"d": "你好"}]


def test_decoder_stops_at_done_marker():
    dec = ChunkDecoder()
    pulled = []

    def reads():
        for chunk in ['data: {"d": "A"}\n', "data: [DONE]\n", 'data: {"d": "late"}\n']:
            pulled.append(chunk)
            yield chunk

    frames = list(dec.frames(reads()))
    assert frames == [{"d": "A"}, END_OF_STREAM]
    assert len(pulled) == 2


def test_decoder_ignores_comments_and_sse_fields():
    dec = ChunkDecoder()
    reads = [": OPENROUTER PROCESSING\r\n", "event: message\r\nid: 7\r\n", 'data: {"d": "x"}\r\n', "\r\n"]
    assert list(dec.frames(reads)) == [{"d": "x"}]
    assert dec.skipped == 0


def test_decoder_flushes_trailing_fragment_on_close():
    dec = ChunkDecoder()
    frames = list(dec.frames(['{"d": "A"}\n{"d": ', '"B"}']))
    assert frames == [{"d": "A"}, {"d": "B"}]


def test_decoder_feed_returns_only_complete_frames():
    dec = ChunkDecoder()
    assert dec.feed(b'data: {"d": "A"') == []
    assert dec.feed(b"}\n") == [{"d": "A"}]
    assert dec.flush() == []
