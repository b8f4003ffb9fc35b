"""Tasks module: lifecycle, submissions, approvals and reward settlement."""
