"""External collaborators: email dispatch and the Stripe webhook adapter."""
