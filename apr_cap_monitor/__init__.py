"""APR cap accrual and reimbursement engine."""
