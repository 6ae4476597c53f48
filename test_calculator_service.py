"""
Tests for the Cyprus real-estate calculators
"""
import pytest

from services.calculator_service import (
    CAPITAL_GAINS_URL, TRANSFER_FEES_URL, CalculatorService, format_amount,
)


@pytest.fixture
def calculators():
    return CalculatorService()


def test_format_amount_drops_zero_decimals():
    assert format_amount(8600) == '8,600'
    assert format_amount(36582.8) == '36,582.80'


def test_transfer_fees_single_owner(calculators):
    result = calculators.execute_calculator('transfer_fees', {'property_value': 300000})

    assert result['success'] is True
    assert result['result']['summary'] == '€8,600'
    details = result['result']['details']
    assert details['base_fees'] == pytest.approx(17200)
    assert details['exemption'] == pytest.approx(8600)
    assert 'Buying in Joint Names: No' in result['result']['formatted_output']
    assert result['execution_time_ms'] >= 0


def test_transfer_fees_joint_names_split_the_value(calculators):
    result = calculators.execute_calculator('transfer_fees', {'property_value': '300,000', 'joint_names': 'true'})

    assert result['success'] is True
    assert result['result']['details']['value_per_person'] == 150000
    assert result['result']['summary'] == '€5,800'
    assert 'Value per person: €150,000' in result['result']['formatted_output']


def test_transfer_fees_lowest_band(calculators):
    result = calculators.execute_calculator('transfer_fees', {'property_value': 80000})
    # 3% of 80,000 halved by the resale exemption
    assert result['result']['details']['total_fees'] == pytest.approx(1200)


@pytest.mark.parametrize('value', [0, -5, 'abc', None, True])
def test_transfer_fees_rejects_invalid_value(calculators, value):
    result = calculators.execute_calculator('transfer_fees', {'property_value': value})

    assert result['success'] is False
    assert result['error']['code'] == 'INVALID_INPUT'
    assert result['error']['fallback_url'] == TRANSFER_FEES_URL


def test_capital_gains_default_allowance(calculators):
    result = calculators.execute_calculator('capital_gains_tax', {
        'sale_price': 300000,
        'purchase_price': 100000,
    })

    assert result['success'] is True
    details = result['result']['details']
    assert details['allowance'] == 17086
    assert details['adjusted_purchase_price'] == 100000
    assert details['tax'] == pytest.approx(36582.8)
    assert result['result']['summary'] == '€36,582.80'


def test_capital_gains_main_residence_with_inflation(calculators):
    result = calculators.execute_calculator('capital_gains_tax', {
        'sale_price': 350000,
        'purchase_price': 200000,
        'purchase_year': 2015,
        'sale_year': 2024,
        'allowance_type': 'main_residence',
        'legal_fees': 2000,
    })

    details = result['result']['details']
    assert details['adjusted_purchase_price'] == pytest.approx(200000 * 1.02 ** 9)
    assert details['total_cost_basis'] == pytest.approx(200000 * 1.02 ** 9 + 2000)
    assert details['allowance'] == 85430


def test_capital_gains_loss_is_not_taxed(calculators):
    result = calculators.execute_calculator('capital_gains_tax', {
        'sale_price': 100000,
        'purchase_price': 150000,
    })

    assert result['result']['details']['taxable_gain'] == 0
    assert result['result']['summary'] == '€0'


def test_capital_gains_unknown_allowance_falls_back(calculators):
    result = calculators.execute_calculator('capital_gains_tax', {
        'sale_price': 300000,
        'purchase_price': 100000,
        'allowance_type': 'holiday_home',
    })
    assert result['result']['details']['allowance'] == 17086


def test_capital_gains_requires_prices(calculators):
    result = calculators.execute_calculator('capital_gains_tax', {'sale_price': 300000})

    assert result['success'] is False
    assert result['error']['code'] == 'INVALID_INPUT'
    assert 'fallback_url' not in result['error']


def test_vat_new_policy_reduced_rate(calculators):
    result = calculators.execute_calculator('vat_calculator', {
        'buildable_area': 150,
        'price': 280000,
        'planning_application_date': '15/01/2024',
    })

    assert result['success'] is True
    assert result['result']['details']['is_new_policy'] is True
    assert result['result']['summary'] == '€14,000'


def test_vat_new_policy_above_price_limit(calculators):
    result = calculators.execute_calculator('vat_calculator', {
        'buildable_area': 150,
        'price': 400000,
        'planning_application_date': '01/11/2023',
    })
    assert result['result']['details']['total_vat'] == pytest.approx(76000)


def test_vat_old_policy_small_house(calculators):
    result = calculators.execute_calculator('vat_calculator', {
        'buildable_area': 150,
        'price': 200000,
        'planning_application_date': '31/10/2023',
    })

    assert result['result']['details']['is_new_policy'] is False
    assert result['result']['details']['total_vat'] == pytest.approx(10000)


def test_vat_old_policy_splits_area(calculators):
    result = calculators.execute_calculator('vat_calculator', {
        'buildable_area': 250,
        'price': 250000,
        'planning_application_date': '01/01/2023',
    })

    assert result['result']['details']['total_vat'] == pytest.approx(19500)
    assert len(result['result']['details']['breakdown']) == 3


@pytest.mark.parametrize('inputs, message', [
    ({'buildable_area': 100, 'price': 100000}, 'Planning application date is required (DD/MM/YYYY format)'),
    ({'buildable_area': 100, 'price': 100000, 'planning_application_date': '2024-01-15'},
     'Date must be in DD/MM/YYYY format'),
    ({'buildable_area': 0, 'price': 100000, 'planning_application_date': '15/01/2024'},
     'Buildable area and price must be positive numbers'),
    ({'buildable_area': 100, 'price': 100000, 'planning_application_date': '31/02/2024'},
     'Invalid date provided'),
])
def test_vat_input_errors(calculators, inputs, message):
    result = calculators.execute_calculator('vat_calculator', inputs)

    assert result['success'] is False
    assert result['error']['message'] == message


def test_unknown_calculator(calculators):
    result = calculators.execute_calculator('mortgage', {'amount': 1})

    assert result['success'] is False
    assert result['error']['code'] == 'UNKNOWN_CALCULATOR'


def test_calculation_error_is_reported(calculators, monkeypatch):
    def explode(inputs):
        raise ZeroDivisionError('division by zero')

    monkeypatch.setattr(calculators, 'capital_gains_tax', explode)
    result = calculators.execute_calculator('capital_gains_tax', {})

    assert result['success'] is False
    assert result['error']['code'] == 'CALCULATION_ERROR'
    assert result['error']['fallback_url'] == CAPITAL_GAINS_URL


def test_validate_calculator_inputs(calculators):
    calculator = {
        'input_fields': [
            {'name': 'property_value', 'label': 'Property value', 'type': 'currency', 'required': True,
             'validation': {'min': 1000}},
            {'name': 'joint_names', 'type': 'select', 'validation': {'allowed_values': ['true', 'false']}},
            {'name': 'notes', 'type': 'text'},
        ],
    }

    missing = calculators.validate_calculator_inputs(calculator, {})
    assert missing['valid'] is False
    assert missing['missing_fields'] == ['property_value']
    assert missing['errors'] == ['Property value is required']

    invalid = calculators.validate_calculator_inputs(calculator, {'property_value': 500, 'joint_names': 'maybe'})
    assert [field['name'] for field in invalid['invalid_fields']] == ['property_value', 'joint_names']

    valid = calculators.validate_calculator_inputs(calculator, {'property_value': '250,000', 'joint_names': 'true'})
    assert valid['valid'] is True


def test_list_calculators(calculators):
    names = [item['name'] for item in calculators.list_calculators()]
    assert names == ['transfer_fees', 'capital_gains_tax', 'vat_calculator']
