"""aws-keyctl: lifecycle helper for a Terraform-managed AWS access key."""

__version__ = "0.1.0"
