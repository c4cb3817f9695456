"""Task graph package: the task model, the dependency DAG and its snapshot store."""
