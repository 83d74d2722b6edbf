"""
Loan Calculation Strategies

Reducing Balance, Flat Rate and Simple Interest conventions behind one
interface: schedule generation, late-payment penalties and early settlement.
Strategies are stateless; all intermediate math runs at full Decimal
precision and only reported amounts are rounded.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Sequence, Tuple

from .currency import ZERO, ONE, HUNDRED, DecimalLike, to_decimal, round_money, decimal_power
from .errors import ErrorCode, LoanValidationError
from .periods import add_period, days_between, number_of_installments, periodic_rate
from .schedule import (
    EarlySettlementResult, Installment, LoanCalculationInput, LoanCalculationMethod,
    LoanCalculationResult, PenaltyResult, PenaltyType, ScheduleSummary,
)

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = Decimal('365')
PROPORTIONAL_REBATE_SHARE = Decimal('0.8')


def split_schedule(result: LoanCalculationResult,
                   installments_paid: int) -> Tuple[Sequence[Installment], Sequence[Installment]]:
    """Split a schedule into its paid head and unpaid tail"""
    total = len(result.schedule)
    if installments_paid < 0 or installments_paid > total:
        raise LoanValidationError(
            f"installments_paid must be between 0 and {total}, got {installments_paid}"
        )
    return result.schedule[:installments_paid], result.schedule[installments_paid:]


def sum_field(installments: Sequence[Installment], name: str) -> Decimal:
    return sum((getattr(i, name) for i in installments), ZERO)


def even_split(total: Decimal, count: int) -> List[Decimal]:
    """Split total into count equal parts, the last one absorbing the residue"""
    share = total / Decimal(count)
    parts = [share] * (count - 1)
    parts.append(total - share * (count - 1))
    return parts


class CalculationStrategy(ABC):
    """
    Common contract for interest calculation conventions

    Subclasses supply the per-period principal/interest breakdown and the
    effective rate; schedule assembly, fees, penalties and settlement
    bookkeeping are shared here.
    """

    method: LoanCalculationMethod

    @abstractmethod
    def _periodic_breakdown(self, calc_input: LoanCalculationInput,
                            count: int) -> Tuple[List[Decimal], List[Decimal], Decimal]:
        """Return full-precision principal parts, interest parts and the level payment"""

    @abstractmethod
    def _effective_rate(self, calc_input: LoanCalculationInput, count: int,
                        total_interest: Decimal) -> Decimal:
        """Effective annual rate in percent"""

    def compute_schedule(self, calc_input: LoanCalculationInput) -> LoanCalculationResult:
        """
        Build the full repayment schedule for an input

        Fees are charged with the first installment only. The rounded
        principal of each installment is the difference of rounded
        cumulative principals, so rounded portions add up to the principal
        to the cent and the final remaining balance is exactly zero.
        """
        count = number_of_installments(calc_input.term_months, calc_input.repayment_frequency)
        total_fees = calc_input.total_fees()
        principal_parts, interest_parts, level_payment = self._periodic_breakdown(calc_input, count)

        schedule = self._assemble_schedule(calc_input, principal_parts, interest_parts, total_fees)

        principal = calc_input.principal
        total_interest = sum(interest_parts, ZERO)
        total_amount = principal + total_interest + total_fees
        apr = (total_amount / principal - ONE) * HUNDRED
        average_payment = sum_field(schedule, 'total') / Decimal(count)

        summary = ScheduleSummary(
            number_of_installments=count,
            first_payment_date=schedule[0].due_date,
            last_payment_date=schedule[-1].due_date,
            total_interest=round_money(total_interest),
            total_fees=round_money(total_fees),
            average_payment=round_money(average_payment),
        )

        return LoanCalculationResult(
            principal=round_money(principal),
            total_interest=round_money(total_interest),
            total_fees=round_money(total_fees),
            total_amount=round_money(total_amount),
            installment_amount=round_money(level_payment),
            effective_interest_rate=round_money(self._effective_rate(calc_input, count, total_interest)),
            apr=round_money(apr),
            schedule=tuple(schedule),
            calculation_method=calc_input.calculation_method,
            summary=summary,
        )

    def _assemble_schedule(self, calc_input: LoanCalculationInput,
                           principal_parts: List[Decimal], interest_parts: List[Decimal],
                           total_fees: Decimal) -> List[Installment]:
        principal_total = round_money(calc_input.principal)
        fees = round_money(total_fees)
        no_fees = round_money(ZERO)
        first_due = calc_input.disbursement_date + timedelta(days=calc_input.grace_period_days)

        schedule = []
        cumulative_principal = ZERO
        cumulative_interest = ZERO
        previous_principal = round_money(ZERO)
        previous_interest = round_money(ZERO)

        for number, (principal, interest) in enumerate(zip(principal_parts, interest_parts), start=1):
            cumulative_principal += principal
            cumulative_interest += interest
            rounded_cumulative_principal = round_money(cumulative_principal)
            rounded_cumulative_interest = round_money(cumulative_interest)

            principal_portion = rounded_cumulative_principal - previous_principal
            interest_portion = rounded_cumulative_interest - previous_interest
            fees_portion = fees if number == 1 else no_fees

            schedule.append(Installment(
                number=number,
                due_date=add_period(first_due, number - 1, calc_input.repayment_frequency),
                principal=principal_portion,
                interest=interest_portion,
                fees=fees_portion,
                total=principal_portion + interest_portion + fees_portion,
                remaining_balance=principal_total - rounded_cumulative_principal,
                cumulative_principal=rounded_cumulative_principal,
                cumulative_interest=rounded_cumulative_interest,
            ))
            previous_principal = rounded_cumulative_principal
            previous_interest = rounded_cumulative_interest

        return schedule

    def compute_penalty(self, overdue_days: int, overdue_amount: DecimalLike,
                        penalty_rate: DecimalLike,
                        penalty_type: PenaltyType = PenaltyType.PERCENTAGE_OF_OVERDUE) -> PenaltyResult:
        """Late-payment penalty; penalty_rate is a percent except for FIXED_AMOUNT"""
        if overdue_days < 0:
            raise LoanValidationError("Overdue days cannot be negative")
        amount = to_decimal(overdue_amount)
        rate = to_decimal(penalty_rate)

        if penalty_type == PenaltyType.FIXED_AMOUNT:
            penalty = rate
        elif penalty_type in (PenaltyType.PERCENTAGE_OF_OVERDUE, PenaltyType.PERCENTAGE_OF_INSTALLMENT):
            penalty = amount * rate / HUNDRED
        elif penalty_type == PenaltyType.COMPOUNDING_DAILY:
            penalty = self._daily_penalty(amount, rate, overdue_days)
        else:
            raise LoanValidationError(f"Unsupported penalty type: {penalty_type}")

        return PenaltyResult(
            penalty_amount=round_money(penalty),
            penalty_days=overdue_days,
            penalty_rate=rate,
            penalty_type=penalty_type,
        )

    def _daily_penalty(self, amount: Decimal, rate: Decimal, days: int) -> Decimal:
        # Add-on products do not compound penalties
        return amount * rate / HUNDRED / DAYS_PER_YEAR * Decimal(days)

    def compute_early_settlement(self, original: LoanCalculationResult, settlement_date: date,
                                 installments_paid: int) -> EarlySettlementResult:
        """Settlement quote: unpaid principal and interest less the interest rebate"""
        _, remaining = split_schedule(original, installments_paid)
        remaining_principal = sum_field(remaining, 'principal')
        remaining_interest = sum_field(remaining, 'interest')

        rebate = self._interest_rebate(original, installments_paid, remaining_interest)
        settlement = remaining_principal + remaining_interest - rebate

        return self._settlement_result(settlement_date, remaining, remaining_principal,
                                       remaining_interest, rebate, settlement)

    def _interest_rebate(self, original: LoanCalculationResult, installments_paid: int,
                         remaining_interest: Decimal) -> Decimal:
        return ZERO

    @staticmethod
    def _settlement_result(settlement_date: date, remaining: Sequence[Installment],
                           remaining_principal: Decimal, remaining_interest: Decimal,
                           rebate: Decimal, settlement: Decimal) -> EarlySettlementResult:
        original_remaining_payments = sum_field(remaining, 'total')
        return EarlySettlementResult(
            settlement_date=settlement_date,
            remaining_principal=round_money(remaining_principal),
            remaining_interest=round_money(remaining_interest),
            rebate_amount=round_money(rebate),
            penalty_amount=round_money(ZERO),
            total_settlement_amount=round_money(settlement),
            savings=round_money(original_remaining_payments - settlement),
        )


class ReducingBalanceStrategy(CalculationStrategy):
    """Interest charged each period on the outstanding principal only"""

    method = LoanCalculationMethod.REDUCING_BALANCE

    def _periodic_breakdown(self, calc_input, count):
        principal = calc_input.principal
        rate = periodic_rate(calc_input.annual_interest_rate, calc_input.repayment_frequency)

        # EMI = P * r * (1+r)^n / ((1+r)^n - 1)
        if rate == ZERO:
            emi = round_money(principal / Decimal(count))
        else:
            factor = decimal_power(ONE + rate, count)
            emi = round_money(principal * rate * factor / (factor - ONE))

        principal_parts = []
        interest_parts = []
        balance = principal
        for number in range(1, count + 1):
            interest = balance * rate
            if number == count:
                principal_payment = balance
            else:
                principal_payment = emi - interest
                if principal_payment < ZERO:
                    logger.warning(
                        f"Negative principal {principal_payment} clamped to zero at installment {number}",
                        extra={'extra': {'code': ErrorCode.CALCULATION_INCONSISTENT.value,
                                         'installment': number}}
                    )
                    principal_payment = ZERO
                elif principal_payment > balance:
                    principal_payment = balance
            balance -= principal_payment
            principal_parts.append(principal_payment)
            interest_parts.append(interest)

        return principal_parts, interest_parts, emi

    def _effective_rate(self, calc_input, count, total_interest):
        return total_interest / calc_input.principal * HUNDRED

    def _daily_penalty(self, amount, rate, days):
        daily_rate = rate / HUNDRED / DAYS_PER_YEAR
        return amount * (decimal_power(ONE + daily_rate, days) - ONE)

    def _interest_rebate(self, original, installments_paid, remaining_interest):
        total_term = len(original.schedule)
        remaining_term = total_term - installments_paid
        share = Decimal(remaining_term) / Decimal(total_term)
        return remaining_interest * share * PROPORTIONAL_REBATE_SHARE


def add_on_interest(calc_input: LoanCalculationInput) -> Decimal:
    """Interest on the full principal for the whole term: P x rate x term/12"""
    return (calc_input.principal * calc_input.annual_interest_rate / HUNDRED
            * Decimal(calc_input.term_months) / Decimal(12))


class _EvenSplitStrategy(CalculationStrategy):
    """Principal and add-on interest spread evenly over the installments"""

    def _periodic_breakdown(self, calc_input, count):
        total_interest = add_on_interest(calc_input)
        level_payment = (calc_input.principal + total_interest) / Decimal(count)
        return (even_split(calc_input.principal, count),
                even_split(total_interest, count),
                level_payment)


class FlatRateStrategy(_EvenSplitStrategy):
    """Add-on interest; the effective rate is well above the stated rate"""

    method = LoanCalculationMethod.FLAT_RATE

    def _effective_rate(self, calc_input, count, total_interest):
        # stated x 2n / (n + 1)
        return calc_input.annual_interest_rate * Decimal(2 * count) / Decimal(count + 1)

    def _interest_rebate(self, original, installments_paid, remaining_interest):
        # Rule of 78
        total = len(original.schedule)
        remaining = total - installments_paid
        remaining_digits = Decimal(remaining * (remaining + 1) // 2)
        all_digits = Decimal(total * (total + 1) // 2)
        return remaining_interest * remaining_digits / all_digits


class SimpleInterestStrategy(_EvenSplitStrategy):
    """Simple interest, even split, reported at the stated rate"""

    method = LoanCalculationMethod.SIMPLE_INTEREST

    def _effective_rate(self, calc_input, count, total_interest):
        return calc_input.annual_interest_rate

    def compute_early_settlement(self, original, settlement_date, installments_paid):
        """Settle on interest accrued in proportion to elapsed schedule time"""
        paid, remaining = split_schedule(original, installments_paid)
        remaining_principal = sum_field(remaining, 'principal')
        remaining_interest = sum_field(remaining, 'interest')

        first = original.summary.first_payment_date
        last = original.summary.last_payment_date
        total_days = days_between(first, last)
        if total_days <= 0:
            elapsed_share = ONE
        else:
            elapsed_share = Decimal(days_between(first, settlement_date)) / Decimal(total_days)
            elapsed_share = min(max(elapsed_share, ZERO), ONE)

        actual_interest_owed = original.total_interest * elapsed_share
        interest_already_paid = sum_field(paid, 'interest')
        additional_interest_owed = actual_interest_owed - interest_already_paid

        rebate = max(ZERO, remaining_interest - additional_interest_owed)
        settlement = remaining_principal + additional_interest_owed

        return self._settlement_result(settlement_date, remaining, remaining_principal,
                                       additional_interest_owed, rebate, settlement)
