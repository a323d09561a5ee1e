"""Domain conflicts raised by the billing ledger.

Input validation keeps using ``django.core.exceptions.ValidationError``; the
classes here cover requests that are well-formed but clash with the current
state of a payment record.
"""


class BillingError(Exception):
    pass


class BillingConflict(BillingError):
    pass


class DiscountAlreadyApplied(BillingConflict):
    pass


class NoDiscountToRemove(BillingConflict):
    pass


class AlreadyPaid(BillingConflict):
    pass


class NotApplicable(BillingConflict):
    pass


class RecordAlreadyExists(BillingConflict):
    pass


class StaleRecord(BillingConflict):
    def __init__(self, expected_version, current_version):
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f'Payment record changed since it was read (expected version {expected_version}, '
            f'found {current_version}).'
        )
