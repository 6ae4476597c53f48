"""
Cyprus real-estate calculators

Transfer fees and capital gains follow the zyprus.com calculators, VAT
follows the mof.gov.cy house VAT calculator.
"""
import time
from datetime import date
from typing import Dict, Any, List, Optional

from utils.logger import get_logger

logger = get_logger(__name__)

TRANSFER_FEES_URL = 'https://www.zyprus.com/help/1260/property-transfer-fees-calculator'
CAPITAL_GAINS_URL = 'https://www.zyprus.com/capital-gains-calculator'
VAT_URL = 'https://www.mof.gov.cy/mof/tax/taxdep.nsf/vathousecalc_gr/vathousecalc_gr?openform'

CAPITAL_GAINS_ALLOWANCES = {
    'main_residence': 85430,
    'farm_land': 25629,
    'any_other_sale': 17086,
    'none': 0,
}
CAPITAL_GAINS_RATE = 0.20
INFLATION_RATE = 0.02

VAT_POLICY_CUTOFF = date(2023, 11, 1)
VAT_REDUCED_RATE = 0.05
VAT_STANDARD_RATE = 0.19
VAT_PRICE_LIMIT = 350000
VAT_REDUCED_AREA = 200

CALCULATOR_CATALOG = [
    {
        'name': 'transfer_fees',
        'description': 'Property transfer fees payable to the Land Registry for a resale property',
        'example_usage': 'Calculate transfer fees for a €300,000 property in joint names',
        'required_inputs': ['property_value'],
    },
    {
        'name': 'capital_gains_tax',
        'description': 'Capital gains tax on the sale of Cyprus property',
        'example_usage': 'Capital gains on a property bought for €200,000 in 2015 and sold for €350,000 in 2024',
        'required_inputs': ['sale_price', 'purchase_price', 'purchase_year', 'sale_year'],
    },
    {
        'name': 'vat_calculator',
        'description': 'VAT on a new build house or apartment',
        'example_usage': 'VAT for a 150m² apartment priced at €280,000 with planning application dated 15/01/2024',
        'required_inputs': ['buildable_area', 'price', 'planning_application_date'],
    },
]


def format_amount(value: float) -> str:
    """Thousands separators, decimals only when there are any"""
    if value == int(value):
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(',', '').strip())
    except ValueError:
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _is_blank(value: Any) -> bool:
    return value is None or value == ''


class CalculatorService:
    """Executes and validates the real-estate calculators"""

    def execute_calculator(self, calculator_name: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Dispatch a calculator by name

        Args:
            calculator_name: transfer_fees, capital_gains_tax or vat_calculator
            inputs: Raw inputs keyed by field name

        Returns:
            Execution result with either result or error populated
        """
        inputs = inputs or {}
        calculators = {
            'transfer_fees': self.transfer_fees,
            'capital_gains_tax': self.capital_gains_tax,
            'vat_calculator': self.vat_calculator,
        }
        calculator = calculators.get(calculator_name)
        if calculator is None:
            return {
                'success': False,
                'calculator_name': calculator_name,
                'inputs': inputs,
                'error': {
                    'code': 'UNKNOWN_CALCULATOR',
                    'message': f'Calculator "{calculator_name}" not found',
                },
            }

        started = time.time()
        try:
            result = calculator(inputs)
        except Exception as e:
            logger.error(f"Calculator {calculator_name} failed: {e}")
            result = self._failure(calculator_name, inputs, 'CALCULATION_ERROR', str(e),
                                   self._fallback_url(calculator_name))
        result['execution_time_ms'] = int((time.time() - started) * 1000)
        return result

    @staticmethod
    def _fallback_url(calculator_name: str) -> Optional[str]:
        return {
            'transfer_fees': TRANSFER_FEES_URL,
            'capital_gains_tax': CAPITAL_GAINS_URL,
            'vat_calculator': VAT_URL,
        }.get(calculator_name)

    @staticmethod
    def _failure(calculator_name, inputs, code, message, fallback_url=None) -> Dict[str, Any]:
        error = {'code': code, 'message': message}
        if fallback_url:
            error['fallback_url'] = fallback_url
        return {
            'success': False,
            'calculator_name': calculator_name,
            'inputs': inputs,
            'error': error,
        }

    @staticmethod
    def _success(calculator_name, inputs, summary, details, formatted_output) -> Dict[str, Any]:
        return {
            'success': True,
            'calculator_name': calculator_name,
            'inputs': inputs,
            'result': {
                'summary': summary,
                'details': details,
                'formatted_output': formatted_output,
            },
        }

    def transfer_fees(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Progressive bands: 3% up to 85,000, 5% up to 170,000, 8% above.
        Joint names split the value per person. A 50% resale exemption applies.
        """
        property_value = _to_float(inputs.get('property_value'))
        joint_names = inputs.get('joint_names') in (True, 'true')

        if property_value is None or property_value <= 0:
            return self._failure('transfer_fees', inputs, 'INVALID_INPUT',
                                 'Property value must be a positive number', TRANSFER_FEES_URL)

        persons = 2 if joint_names else 1
        value_per_person = property_value / persons

        if value_per_person <= 85000:
            fees = value_per_person * 0.03
        elif value_per_person <= 170000:
            fees = 85000 * 0.03 + (value_per_person - 85000) * 0.05
        else:
            fees = 85000 * 0.03 + 85000 * 0.05 + (value_per_person - 170000) * 0.08

        fees *= persons
        exemption = fees * 0.5
        total_fees = fees - exemption

        per_person_line = f"- Value per person: €{format_amount(value_per_person)}\n" if joint_names else ''
        formatted_output = (
            "💰 Transfer Fees Calculation\n\n"
            f"Property Value: €{format_amount(property_value)}\n"
            f"Buying in Joint Names: {'Yes' if joint_names else 'No'}\n\n"
            "Calculation Breakdown:\n"
            f"{per_person_line}"
            f"- Base transfer fees: €{format_amount(fees)}\n"
            f"- 50% Exemption (resale): -€{format_amount(exemption)}\n\n"
            f"📊 Total Transfer Fees: €{format_amount(total_fees)}\n\n"
            "Note: This calculation assumes a resale property (50% exemption applied). "
            "New builds subject to VAT are fully exempt from transfer fees."
        )

        return self._success('transfer_fees', inputs, f"€{format_amount(total_fees)}", {
            'property_value': property_value,
            'joint_names': joint_names,
            'value_per_person': value_per_person,
            'base_fees': fees,
            'exemption': exemption,
            'total_fees': total_fees,
        }, formatted_output)

    def capital_gains_tax(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """20% on the gain above the allowance, purchase price inflated 2% per year held"""
        sale_price = _to_float(inputs.get('sale_price'))
        purchase_price = _to_float(inputs.get('purchase_price'))

        if sale_price is None or purchase_price is None or sale_price <= 0 or purchase_price <= 0:
            return self._failure('capital_gains_tax', inputs, 'INVALID_INPUT',
                                 'Sale price and purchase price must be positive numbers')

        purchase_year = _to_int(inputs.get('purchase_year'))
        sale_year = _to_int(inputs.get('sale_year'))
        years_held = sale_year - purchase_year if purchase_year and sale_year else 0

        expenses = {
            name: _to_float(inputs.get(name)) or 0.0
            for name in ('cost_of_improvements', 'transfer_fees', 'interest_on_loan',
                         'legal_fees', 'estate_agent_fees', 'other_expenses')
        }

        allowance_type = inputs.get('allowance_type') or 'any_other_sale'
        allowance = CAPITAL_GAINS_ALLOWANCES.get(allowance_type, CAPITAL_GAINS_ALLOWANCES['any_other_sale'])

        adjusted_purchase_price = purchase_price * (1 + INFLATION_RATE) ** years_held
        total_cost_basis = adjusted_purchase_price + sum(expenses.values())
        capital_gain = sale_price - total_cost_basis
        taxable_gain = max(0.0, capital_gain - allowance)
        tax = taxable_gain * CAPITAL_GAINS_RATE

        formatted_output = (
            "📈 Capital Gains Tax Calculation\n\n"
            "Sale Details:\n"
            f"- Sale Price: €{format_amount(sale_price)}\n"
            f"- Sale Year: {sale_year or 'N/A'}\n\n"
            "Purchase Details:\n"
            f"- Purchase Price: €{format_amount(purchase_price)}\n"
            f"- Purchase Year: {purchase_year or 'N/A'}\n"
            f"- Inflation-Adjusted: €{format_amount(adjusted_purchase_price)}\n\n"
            "Expenses:\n"
            f"- Improvements: €{format_amount(expenses['cost_of_improvements'])}\n"
            f"- Transfer Fees: €{format_amount(expenses['transfer_fees'])}\n"
            f"- Legal Fees: €{format_amount(expenses['legal_fees'])}\n"
            f"- Agent Fees: €{format_amount(expenses['estate_agent_fees'])}\n"
            f"- Other: €{format_amount(expenses['other_expenses'])}\n\n"
            "Calculation:\n"
            f"- Total Cost Basis: €{format_amount(total_cost_basis)}\n"
            f"- Capital Gain: €{format_amount(capital_gain)}\n"
            f"- Allowance ({allowance_type.replace('_', ' ')}): €{format_amount(allowance)}\n"
            f"- Taxable Gain: €{format_amount(taxable_gain)}\n\n"
            f"📊 Capital Gains Tax (20%): €{format_amount(tax)}\n\n"
            "Note: This is an estimate. Consult a tax professional for accurate assessment."
        )

        return self._success('capital_gains_tax', inputs, f"€{format_amount(tax)}", {
            'sale_price': sale_price,
            'purchase_price': purchase_price,
            'adjusted_purchase_price': adjusted_purchase_price,
            'total_cost_basis': total_cost_basis,
            'capital_gain': capital_gain,
            'allowance': allowance,
            'taxable_gain': taxable_gain,
            'tax': tax,
        }, formatted_output)

    def vat_calculator(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        From 1 Nov 2023 the 5% rate applies to properties up to 350,000.
        Before that, the first 200m² are charged 5% and the rest 19%.
        """
        date_str = inputs.get('planning_application_date')
        if not date_str:
            return self._failure('vat_calculator', inputs, 'INVALID_INPUT',
                                 'Planning application date is required (DD/MM/YYYY format)')

        parts = str(date_str).split('/')
        if len(parts) != 3:
            return self._failure('vat_calculator', inputs, 'INVALID_INPUT',
                                 'Date must be in DD/MM/YYYY format')

        buildable_area = _to_float(inputs.get('buildable_area'))
        price = _to_float(inputs.get('price'))
        if buildable_area is None or price is None or buildable_area <= 0 or price <= 0:
            return self._failure('vat_calculator', inputs, 'INVALID_INPUT',
                                 'Buildable area and price must be positive numbers')

        try:
            day, month, year = (int(part) for part in parts)
            application_date = date(year, month, day)
        except ValueError:
            return self._failure('vat_calculator', inputs, 'INVALID_INPUT', 'Invalid date provided')

        is_new_policy = application_date >= VAT_POLICY_CUTOFF
        breakdown: List[str] = []

        if is_new_policy:
            if price <= VAT_PRICE_LIMIT:
                total_vat = price * VAT_REDUCED_RATE
                breakdown.append(f"Property value (€{format_amount(price)}) is under €350,000 limit")
                breakdown.append("VAT Rate: 5% (reduced rate under new policy)")
            else:
                total_vat = price * VAT_STANDARD_RATE
                breakdown.append(f"Property value (€{format_amount(price)}) exceeds €350,000 limit")
                breakdown.append("VAT Rate: 19% (standard rate under new policy)")
            breakdown.append(f"VAT Amount: €{format_amount(total_vat)}")
        elif buildable_area <= VAT_REDUCED_AREA:
            total_vat = price * VAT_REDUCED_RATE
            breakdown.append(f"Buildable area ({format_amount(buildable_area)}m²) is within 200m² limit")
            breakdown.append("VAT Rate: 5% (reduced rate under old policy)")
            breakdown.append(f"VAT Amount: €{format_amount(total_vat)}")
        else:
            price_per_sqm = price / buildable_area
            reduced_area = VAT_REDUCED_AREA
            standard_area = buildable_area - VAT_REDUCED_AREA
            reduced_vat = reduced_area * price_per_sqm * VAT_REDUCED_RATE
            standard_vat = standard_area * price_per_sqm * VAT_STANDARD_RATE
            total_vat = reduced_vat + standard_vat
            breakdown.append(
                f"First 200m² at 5%: {reduced_area}m² × €{price_per_sqm:.2f}/m² = €{format_amount(reduced_vat)}"
            )
            breakdown.append(
                f"Remaining area at 19%: {format_amount(standard_area)}m² × €{price_per_sqm:.2f}/m² "
                f"= €{format_amount(standard_vat)}"
            )
            breakdown.append(f"Total VAT: €{format_amount(total_vat)}")

        policy = 'New Policy (from Nov 1, 2023)' if is_new_policy else 'Old Policy (before Nov 1, 2023)'
        breakdown_lines = '\n'.join(f"• {line}" for line in breakdown)
        formatted_output = (
            "💵 VAT Calculation\n\n"
            "Property Details:\n"
            f"- Buildable Area: {format_amount(buildable_area)}m²\n"
            f"- Price: €{format_amount(price)}\n"
            f"- Planning Application Date: {date_str}\n"
            f"- Applied Policy: {policy}\n\n"
            "Calculation Breakdown:\n"
            f"{breakdown_lines}\n\n"
            f"📊 Total VAT: €{format_amount(total_vat)}\n\n"
            "Note: This calculation is for new builds only. Resale properties are exempt from VAT "
            "but pay transfer fees. Policy effective from planning application date."
        )

        return self._success('vat_calculator', inputs, f"€{format_amount(total_vat)}", {
            'buildable_area': buildable_area,
            'price': price,
            'planning_application_date': date_str,
            'is_new_policy': is_new_policy,
            'total_vat': total_vat,
            'breakdown': breakdown,
        }, formatted_output)

    def validate_calculator_inputs(self, calculator: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check inputs against a calculator's input_fields configuration

        Returns:
            Dict with valid, missing_fields, invalid_fields and errors
        """
        missing_fields: List[str] = []
        invalid_fields: List[Dict[str, Any]] = []
        errors: List[str] = []

        for field in calculator.get('input_fields') or []:
            name = field['name']
            label = field.get('label', name)
            value = inputs.get(name)

            if _is_blank(value):
                if field.get('required'):
                    missing_fields.append(name)
                    errors.append(f"{label} is required")
                continue

            validation = field.get('validation') or {}

            if field.get('type') in ('currency', 'number'):
                number = _to_float(value)
                if number is None:
                    invalid_fields.append({'name': name, 'value': value, 'reason': 'Must be a valid number'})
                    errors.append(f"{label} must be a valid number")
                    continue
                if validation.get('min') is not None and number < validation['min']:
                    invalid_fields.append({'name': name, 'value': value,
                                           'reason': f"Must be at least {validation['min']}"})
                    errors.append(f"{label} must be at least {validation['min']}")
                if validation.get('max') is not None and number > validation['max']:
                    invalid_fields.append({'name': name, 'value': value,
                                           'reason': f"Must be at most {validation['max']}"})
                    errors.append(f"{label} must be at most {validation['max']}")

            allowed = validation.get('allowed_values')
            if field.get('type') == 'select' and allowed and value not in allowed:
                allowed_text = ', '.join(allowed)
                invalid_fields.append({'name': name, 'value': value,
                                       'reason': f"Must be one of: {allowed_text}"})
                errors.append(f"{label} must be one of: {allowed_text}")

        return {
            'valid': not missing_fields and not invalid_fields,
            'missing_fields': missing_fields,
            'invalid_fields': invalid_fields,
            'errors': errors,
        }

    def list_calculators(self) -> List[Dict[str, Any]]:
        """Calculators available to agents, for help replies and tool discovery"""
        return [dict(item) for item in CALCULATOR_CATALOG]


# Create a singleton instance
calculator_service = CalculatorService()
