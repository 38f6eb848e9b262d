"""EC2 instance and EBS volume listing, pricing maps and cost collection."""