from tunefree.services.extractors import DecoderFactory, extract_list, find_id, find_image


# --- extract_list ---

def test_grouped_chart_is_flattened_in_order():
    payload = {'group': [{'list': [{'id': 1}, {'id': 2}]}, {'list': [{'id': 3}]}]}
    assert extract_list(payload) == [{'id': 1}, {'id': 2}, {'id': 3}]

def test_nested_group_list_under_data():
    payload = {'data': {'groupList': [
        {'groupName': 'Hot', 'toplist': [{'id': 'a'}]},
        {'groupName': 'New', 'topList': [{'id': 'b'}, {'id': 'c'}]},
    ]}}
    assert [item['id'] for item in extract_list(payload)] == ['a', 'b', 'c']

def test_top_level_array_of_groups_is_flattened():
    payload = [{'toplist': [{'id': 1}]}, {'toplist': [{'id': 2}]}]
    assert extract_list(payload) == [{'id': 1}, {'id': 2}]

def test_memberless_groups_fall_through_to_list_keys():
    payload = {'group': [{'groupName': 'hot'}], 'songs': [{'id': 1, 'name': 'a'}]}
    assert extract_list(payload) == [{'id': 1, 'name': 'a'}]

    payload = {'data': {'groupList': [{'groupName': 'hot', 'list': []}], 'songlist': [{'id': 5}]}}
    assert extract_list(payload) == [{'id': 5}]

def test_memberless_group_array_is_kept_as_records():
    payload = [{'groupName': 'hot', 'id': 1}]
    assert extract_list(payload) == payload

def test_plain_array_passes_through():
    payload = [{'id': 1, 'name': 'x'}, {'id': 2, 'name': 'y'}]
    assert extract_list(payload) == payload

def test_first_non_empty_list_key_wins():
    payload = {'tracks': [], 'songs': [{'id': 7}], 'list': [{'id': 8}]}
    assert extract_list(payload) == [{'id': 7}]

def test_list_one_level_under_data():
    payload = {'code': 0, 'data': {'songlist': [{'id': 5}]}}
    assert extract_list(payload) == [{'id': 5}]

def test_single_record_is_wrapped():
    payload = {'id': 9, 'name': 'Single'}
    assert extract_list(payload) == [payload]

def test_nothing_found_gives_empty_list():
    assert extract_list(None) == []
    assert extract_list({}) == []
    assert extract_list({'code': 200, 'msg': 'ok'}) == []
    assert extract_list('text') == []


# --- identity ---

def test_qq_prefers_songmid_over_numeric_id():
    record = {'id': 102065756, 'songmid': '001Qu4I30eVFYb', 'mid': 'other'}
    assert find_id(record, 'qq') == '001Qu4I30eVFYb'

def test_qq_falls_back_through_media_mid_and_top_id():
    assert find_id({'file': {'media_mid': 'M1'}, 'id': 3}, 'qq') == 'M1'
    assert find_id({'topId': 26}, 'qq') == '26'

def test_kuwo_prefers_rid():
    assert find_id({'rid': 228908, 'id': 'MUSIC_1'}, 'kuwo') == '228908'
    assert find_id({'musicrid': 'MUSIC_5'}, 'kuwo') == 'MUSIC_5'

def test_netease_and_unknown_platforms_use_generic_fields():
    assert find_id({'id': 186016}, 'netease') == '186016'
    assert find_id({'ID': 'x'}, 'somewhere') == 'x'

def test_missing_identity_is_none():
    assert find_id({'name': 'no id'}, 'netease') is None
    assert find_id({'id': ''}, 'netease') is None
    assert find_id({'id': 0}, 'netease') is None
    assert find_id('not a record', 'qq') is None

def test_unknown_platform_gets_generic_decoder():
    assert DecoderFactory.get('qq').platform == 'qq'
    assert DecoderFactory.get('unknown').platform == 'generic'


# --- images ---

def test_find_image_priority_and_nested_fallback():
    assert find_image({'pic': 'b', 'picUrl': 'a'}) == 'a'
    assert find_image({'cover': '', 'img': 'c'}) == 'c'
    assert find_image({'mac_detail': {'pic_v12': 'nested'}}) == 'nested'
    assert find_image({'pic': 12}) == ''
    assert find_image(None) == ''
