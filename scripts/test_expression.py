import pytest

from tunefree.core.expression import (
    ExpressionError,
    compile_function,
    evaluate,
    render_template,
    render_value,
)


# --- expressions ---

def test_arithmetic_and_coercion():
    assert evaluate('1 + 2 * 3') == 7
    assert evaluate('(page - 1) * 30', {'page': 3}) == 60
    assert evaluate("'a' + 1") == 'a1'
    assert evaluate("page * 1 + 1", {'page': '4'}) == 5
    assert evaluate('7 / 2') == 3.5
    assert evaluate('10 % 4') == 2

def test_ternary_and_logic():
    assert evaluate("q === 'flac' ? 2000 : 320", {'q': 'flac'}) == 2000
    assert evaluate("q === 'flac' ? 2000 : 320", {'q': '128k'}) == 320
    assert evaluate("x || 'default'", {'x': ''}) == 'default'
    assert evaluate('x ?? 5', {'x': None}) == 5
    assert evaluate('!0 && 1 == "1"') is True

def test_string_methods_and_templates():
    assert evaluate("s.trim().toUpperCase()", {'s': ' abc '}) == 'ABC'
    assert evaluate("s.split(',').length", {'s': 'a,b,c'}) == 3
    assert evaluate('`${a}-${b}`', {'a': 1, 'b': 'x'}) == '1-x'
    assert evaluate("String(id).padStart(5, '0')", {'id': 42}) == '00042'

def test_allow_listed_functions():
    assert evaluate("parseInt('42px')") == 42
    assert evaluate("parseInt('ff', 16)") == 255
    assert evaluate('Math.floor(7 / 2)') == 3
    assert evaluate('Math.max(1, 9, 3)') == 9
    assert evaluate("encodeURIComponent('a b&c')") == 'a%20b%26c'
    assert evaluate('JSON.stringify({a: 1})') == '{"a":1}'

def test_optional_chaining_returns_none():
    assert evaluate('res?.data?.list', {'res': {}}) is None
    assert evaluate('res.missing', {'res': {}}) is None

def test_unknown_names_are_rejected():
    with pytest.raises(ExpressionError):
        evaluate('process.env')
    with pytest.raises(ExpressionError):
        evaluate('require("os")')
    with pytest.raises(ExpressionError):
        evaluate('fetch("http://x")')

def test_dunder_access_is_rejected():
    with pytest.raises(ExpressionError):
        evaluate("x.__class__", {'x': {}})
    with pytest.raises(ExpressionError):
        evaluate("x['__proto__']", {'x': {}})

def test_reading_property_of_missing_value_fails():
    with pytest.raises(ExpressionError):
        evaluate('a.b.c', {'a': {}})

def test_syntax_errors():
    with pytest.raises(ExpressionError):
        evaluate('1 +')
    with pytest.raises(ExpressionError):
        evaluate("'unterminated")


# --- transforms ---

def test_transform_function_expression():
    transform = compile_function("""
        function (res) {
            const out = [];
            for (const s of res.songs) {
                if (!s.id) continue;
                out.push({ id: s.id, name: s.name, artist: s.ar.map(a => a.name).join('/') });
            }
            return out;
        }
    """)
    raw = {'songs': [
        {'id': 1, 'name': 'A', 'ar': [{'name': 'x'}, {'name': 'y'}]},
        {'id': 0, 'name': 'skip', 'ar': []},
    ]}
    assert transform(raw) == [{'id': 1, 'name': 'A', 'artist': 'x/y'}]

def test_transform_arrow_function():
    transform = compile_function("res => (res.data || []).filter(x => x.ok).length")
    assert transform({'data': [{'ok': True}, {'ok': False}, {'ok': 1}]}) == 2
    assert transform({}) == 0

def test_transform_must_be_a_function():
    with pytest.raises(ExpressionError):
        compile_function('1 + 1')

def test_runaway_transform_hits_step_budget():
    transform = compile_function('function (x) { for (;;) {} }', max_steps=1000)
    with pytest.raises(ExpressionError):
        transform(None)

def test_oversized_strings_and_arrays_are_rejected():
    with pytest.raises(ExpressionError):
        evaluate("'x'.padStart(2000000)")

    doubling = compile_function("s => { for (let i = 0; i < 64; i++) s = s + s; return s }")
    with pytest.raises(ExpressionError):
        doubling('x')

    sparse = compile_function('n => { const a = []; a[n] = 1; return a.length }')
    assert sparse(3) == 4
    with pytest.raises(ExpressionError):
        sparse(20000000)

def test_undefined_fields_are_dropped_from_results():
    transform = compile_function('r => ({ id: r.id, pic: r.nope })')
    assert transform({'id': 5}) == {'id': 5}


# --- placeholders ---

def test_render_template_encodes_inside_urls():
    url = render_template('https://x.test/s?w={{keyword}}&p={{page + 1}}', {'keyword': '周 杰伦', 'page': 0}, encode=True)
    assert url == 'https://x.test/s?w=%E5%91%A8%20%E6%9D%B0%E4%BC%A6&p=1'

def test_render_template_plain_and_failed_placeholders():
    assert render_template('{{a}}-{{b.c.d}}', {'a': 'x', 'b': {}}) == 'x-'
    assert render_template('no placeholders', {}) == 'no placeholders'

def test_render_value_keeps_native_types():
    body = {
        'limit': '{{parseInt(pageSize)}}',
        'offset': '{{ page * 30 }}',
        'query': 'kw={{keyword}}',
        'flags': ['{{true}}', 3],
    }
    rendered = render_value(body, {'pageSize': '30', 'page': 2, 'keyword': 'k'})
    assert rendered == {'limit': 30, 'offset': 60, 'query': 'kw=k', 'flags': [True, 3]}
