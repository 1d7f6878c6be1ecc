"""Email queue: approved timesheets waiting to be sent out in a batch summary email."""
