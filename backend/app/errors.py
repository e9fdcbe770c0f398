class DomainError(Exception):
    """
    Business-rule failure raised by the numbering and GST modules.
    `main.py` maps every subclass to a JSON response using `status_code`.
    """

    code = "domain_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidFormatConfig(DomainError):
    code = "invalid_format_config"
    status_code = 400


class ConcurrencyConflict(DomainError):
    # The caller resubmits the whole document-creation request.
    code = "concurrency_conflict"
    status_code = 409


class InvalidGSTRecord(DomainError):
    # Per-invoice problem: the invoice is logged and left out of the report.
    code = "invalid_gst_record"
    status_code = 422


class UnknownUQCCode(InvalidGSTRecord):
    code = "unknown_uqc_code"

    def __init__(self, unit: str):
        super().__init__(f"unknown unit quantity code: {unit!r}")
        self.unit = unit


class PeriodDataInconsistency(DomainError):
    # Totals would be unreliable, so the whole report is aborted.
    code = "period_data_inconsistency"
    status_code = 422
