import pytest

from settings import ColumnConfig, MappingOptions


@pytest.fixture
def source_columns():
    return ColumnConfig(make='Make', model='Model')


@pytest.fixture
def reference_columns():
    return ColumnConfig(make='MAKE', model='MODEL', codes=('CODE', 'BODY'))


@pytest.fixture
def reference_rows():
    return [
        {'MAKE': 'TOYOTA', 'MODEL': 'CAMRY 4D SDN LE', 'CODE': 'T-001', 'BODY': 'SEDAN'},
        {'MAKE': 'TOYOTA', 'MODEL': 'CAMRY HYBRID', 'CODE': 'T-002', 'BODY': 'SEDAN'},
        {'MAKE': 'TOYOTA', 'MODEL': 'COROLLA', 'CODE': 'T-003', 'BODY': 'SEDAN'},
        {'MAKE': 'TOYOTA', 'MODEL': 'LAND CRUISER', 'CODE': 'T-004', 'BODY': 'SUV'},
        {'MAKE': 'NISSAN', 'MODEL': 'PATROL', 'CODE': 'N-001', 'BODY': 'SUV'},
        {'MAKE': 'NISSAN', 'MODEL': '350Z', 'CODE': 'N-002', 'BODY': 'COUPE'},
        {'MAKE': 'MERCEDES-BENZ', 'MODEL': 'C 200', 'CODE': 'M-001', 'BODY': 'SEDAN'},
        {'MAKE': 'BYD', 'MODEL': 'S6', 'CODE': 'B-001', 'BODY': 'SUV'},
    ]


@pytest.fixture
def fast_options():
    """Default options without the pacing delay."""
    return MappingOptions(inter_batch_delay=0.0)
