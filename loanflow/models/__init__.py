from loanflow.models.loan_record import LoanRecord

__all__ = ["LoanRecord"]
