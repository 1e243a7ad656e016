import pytest
from cdr.MODELS.layer import Layer, Override, Reset
from cdr.RESOLVERS.layer_merger import LayerMerger, ListStrategy, normalize_field
from cdr.exceptions import MergeConflictError, ParseError


def _layers(*service_maps):
    return [Layer(origin=f"layer{i}.yml", rank=i, services=services)
            for i, services in enumerate(service_maps)]


def test_scalar_last_wins():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app:1.0'}},
        {'web': {'image': 'app:dev'}},
    ))
    assert merged.services['web']['image'] == 'app:dev'
    assert merged.origin_of('web', 'image') == 'layer1.yml'


def test_null_never_overrides():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app:1.0', 'environment': {'A': '1'}}},
        {'web': {'image': None, 'environment': {'A': None}}},
    ))
    assert merged.services['web']['image'] == 'app:1.0'
    assert merged.services['web']['environment'] == {'A': '1'}


def test_command_is_replaced_not_appended():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'command': ['python', 'app.py']}},
        {'web': {'command': ['python', '-m', 'debug']}},
    ))
    assert merged.services['web']['command'] == ['python', '-m', 'debug']


def test_ports_append_by_default():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'ports': [8000]}},
        {'web': {'ports': [9000]}},
    ))
    assert merged.services['web']['ports'] == [8000, 9000]


def test_append_drops_duplicates():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'ports': ['8000:8000']}},
        {'web': {'ports': ['8000:8000', '9000:9000']}},
    ))
    assert merged.services['web']['ports'] == ['8000:8000', '9000:9000']


def test_replace_strategy():
    merged = LayerMerger(ListStrategy.REPLACE).merge(_layers(
        {'web': {'image': 'app', 'ports': [8000]}},
        {'web': {'ports': [9000]}},
    ))
    assert merged.services['web']['ports'] == [9000]


def test_override_tag_replaces_list():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'ports': [8000, 8001]}},
        {'web': {'ports': Override([9000])}},
    ))
    assert merged.services['web']['ports'] == [9000]


def test_override_tag_replaces_map():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'environment': {'A': '1', 'B': '2'}}},
        {'web': {'environment': Override({'C': '3'})}},
    ))
    assert merged.services['web']['environment'] == {'C': '3'}


def test_reset_tag_drops_field():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'ports': [8000], 'environment': {'A': '1', 'B': '2'}}},
        {'web': {'ports': Reset(), 'environment': {'B': Reset()}}},
    ))
    assert 'ports' not in merged.services['web']
    assert merged.services['web']['environment'] == {'A': '1'}
    assert merged.origin_of('web', 'ports') == 'layer1.yml'


def test_environment_union():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'environment': {'A': '1', 'B': '2'}}},
        {'web': {'environment': ['B=3', 'C=4']}},
    ))
    assert merged.services['web']['environment'] == {'A': '1', 'B': '3', 'C': '4'}


def test_nested_maps_merge_and_nested_lists_replace():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'healthcheck': {'test': ['CMD', 'true'], 'interval': '5s'}}},
        {'web': {'healthcheck': {'test': ['CMD', 'curl', 'localhost'], 'retries': 5}}},
    ))
    assert merged.services['web']['healthcheck'] == {
        'test': ['CMD', 'curl', 'localhost'],
        'interval': '5s',
        'retries': 5,
    }


def test_depends_on_short_and_long_forms_merge():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app', 'depends_on': ['db']}},
        {'web': {'depends_on': {'cache': {'condition': 'service_healthy'}}}},
    ))
    assert merged.services['web']['depends_on'] == {
        'db': {'condition': 'service_started'},
        'cache': {'condition': 'service_healthy'},
    }


def test_service_only_in_override_is_added():
    merged = LayerMerger().merge(_layers(
        {'web': {'image': 'app'}},
        {'worker': {'image': 'worker'}},
    ))
    assert set(merged.services) == {'web', 'worker'}
    assert merged.origin_of('worker') == 'layer1.yml'


def test_list_vs_map_conflict_names_both_files():
    with pytest.raises(MergeConflictError) as exc:
        LayerMerger().merge(_layers(
            {'web': {'image': 'app', 'volumes': ['data:/data']}},
            {'web': {'volumes': {'data': '/data'}}},
        ))
    err = exc.value
    assert err.field == 'volumes'
    assert err.origins == ('layer0.yml', 'layer1.yml')
    assert err.service == 'web'
    assert 'layer0.yml' in str(err) and 'layer1.yml' in str(err)


def test_top_level_declarations_merge():
    layers = [
        Layer(origin='a.yml', services={}, volumes={'data': {}}, networks={'front': {}}),
        Layer(origin='b.yml', rank=1, services={}, volumes={'logs': {'driver': 'local'}}),
    ]
    merged = LayerMerger().merge(layers)
    assert merged.volumes == {'data': {}, 'logs': {'driver': 'local'}}
    assert merged.networks == {'front': {}}
    assert merged.origins == ['a.yml', 'b.yml']


def test_project_name_last_wins():
    layers = [
        Layer(origin='a.yml', name='one'),
        Layer(origin='b.yml', rank=1),
        Layer(origin='c.yml', rank=2, name='three'),
    ]
    assert LayerMerger().merge(layers).name == 'three'


def test_merge_is_deterministic():
    maps = (
        {'web': {'image': 'app', 'ports': [1, 2], 'environment': {'A': '1'}}},
        {'web': {'ports': [3], 'environment': ['B=2']}, 'db': {'image': 'pg'}},
    )
    first = LayerMerger().merge(_layers(*maps))
    second = LayerMerger().merge(_layers(*maps))
    assert first == second


def test_layers_are_not_mutated():
    base = {'web': {'image': 'app', 'ports': [8000]}}
    LayerMerger().merge(_layers(base, {'web': {'ports': [9000]}}))
    assert base['web']['ports'] == [8000]


def test_normalize_short_forms():
    assert normalize_field('build', './app', 'web', 'a.yml') == {'context': './app'}
    assert normalize_field('env_file', '.env', 'web', 'a.yml') == ['.env']
    assert normalize_field('networks', ['front'], 'web', 'a.yml') == {'front': {}}
    assert normalize_field('labels', ['tier=web', 'bare'], 'web', 'a.yml') == {'tier': 'web', 'bare': None}


def test_normalize_rejects_non_string_environment_entries():
    with pytest.raises(ParseError):
        normalize_field('environment', [{'A': 1}], 'web', 'a.yml')
